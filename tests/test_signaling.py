import pytest

from models.messages import MessageKind
from service.signaling import SignalingRouter


async def subscribed(hub, meeting_id="m1"):
    channel = hub.channel(meeting_id)
    await channel.subscribe()
    return channel


def collect(router, kind):
    received = []
    router.on_message(kind, received.append)
    return received


@pytest.mark.asyncio
async def test_send_uses_wire_shape(hub):
    observer = await subscribed(hub)
    frames = []
    observer.on("broadcast", lambda event, payload: frames.append((event, payload)))
    alice = SignalingRouter(await subscribed(hub), "alice")

    await alice.send(MessageKind.OFFER, "bob", {"sdp": "v=0", "type": "offer"})

    assert frames == [("offer", {"from": "alice", "to": "bob", "payload": {"sdp": "v=0", "type": "offer"}})]
    assert alice.sent == 1


@pytest.mark.asyncio
async def test_only_addressee_receives(hub):
    alice = SignalingRouter(await subscribed(hub), "alice")
    bob = SignalingRouter(await subscribed(hub), "bob")
    carol = SignalingRouter(await subscribed(hub), "carol")
    to_bob = collect(bob, MessageKind.OFFER)
    to_carol = collect(carol, MessageKind.OFFER)

    await alice.send(MessageKind.OFFER, "bob", {"sdp": "v=0", "type": "offer"})

    assert len(to_bob) == 1
    assert to_bob[0].sender == "alice"
    assert to_bob[0].kind == MessageKind.OFFER
    assert to_carol == []


@pytest.mark.asyncio
async def test_messages_dispatched_by_kind(hub):
    alice = SignalingRouter(await subscribed(hub), "alice")
    bob = SignalingRouter(await subscribed(hub), "bob")
    offers = collect(bob, MessageKind.OFFER)
    candidates = collect(bob, MessageKind.ICE_CANDIDATE)

    await alice.send(MessageKind.ICE_CANDIDATE, "bob", {"candidate": "candidate:1", "sdpMid": "0"})

    assert offers == []
    assert candidates[0].payload["sdpMid"] == "0"


@pytest.mark.asyncio
async def test_malformed_and_unknown_messages_dropped(hub):
    raw = await subscribed(hub)
    bob = SignalingRouter(await subscribed(hub), "bob")
    offers = collect(bob, MessageKind.OFFER)

    await raw.send("offer", {"to": "bob", "payload": {}})
    await raw.send("offer", {"from": "alice", "to": "bob"})
    await raw.send("chat", {"from": "alice", "to": "bob", "payload": {}})
    await raw.send("offer", {"from": "alice", "to": "bob", "payload": {"sdp": "v=0", "type": "offer"}})

    assert [m.sender for m in offers] == ["alice"]


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others(hub):
    alice = SignalingRouter(await subscribed(hub), "alice")
    bob = SignalingRouter(await subscribed(hub), "bob")

    def broken(message):
        raise RuntimeError("boom")

    bob.on_message(MessageKind.ANSWER, broken)
    answers = collect(bob, MessageKind.ANSWER)

    await alice.send(MessageKind.ANSWER, "bob", {"sdp": "v=0", "type": "answer"})

    assert len(answers) == 1


@pytest.mark.asyncio
async def test_close_stops_delivery(hub):
    alice = SignalingRouter(await subscribed(hub), "alice")
    bob = SignalingRouter(await subscribed(hub), "bob")
    offers = collect(bob, MessageKind.OFFER)

    bob.close()
    bob.close()
    await alice.send(MessageKind.OFFER, "bob", {"sdp": "v=0", "type": "offer"})

    assert offers == []
