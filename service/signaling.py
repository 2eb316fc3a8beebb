# service/signaling.py
import logging
from typing import Any, Callable, Dict, List

from pydantic import ValidationError

from drivers.relay import RelayChannel
from models.messages import HandshakeMessage, MessageKind

logger = logging.getLogger("signaling")

Handler = Callable[[HandshakeMessage], Any]


class SignalingRouter:
    """
    Address-aware handshake bus over the meeting's broadcast channel.

    Every member receives every broadcast; messages whose ``to`` is not
    the local user are dropped here.
    """

    def __init__(self, channel: RelayChannel, self_id: str):
        self.channel = channel
        self.self_id = self_id
        self.handlers: Dict[MessageKind, List[Handler]] = {kind: [] for kind in MessageKind}
        self.sent = 0
        self._attached = True
        self.channel.on("broadcast", self._on_broadcast)

    async def send(self, kind: MessageKind, to_user_id: str, payload: Dict[str, Any]):
        kind = MessageKind(kind)
        message = HandshakeMessage(kind=kind, sender=self.self_id, to=to_user_id, payload=payload)
        logger.debug(f"-> {kind.value} to {to_user_id}")
        self.sent += 1
        await self.channel.send(kind.value, message.to_wire())

    def on_message(self, kind: MessageKind, handler: Handler):
        self.handlers[MessageKind(kind)].append(handler)

    def _on_broadcast(self, event: str, body: Dict[str, Any]):
        try:
            kind = MessageKind(event)
        except ValueError:
            return

        try:
            message = HandshakeMessage.model_validate({**(body or {}), "kind": kind})
        except ValidationError as e:
            logger.warning(f"Dropping malformed {event} message: {e.error_count()} errors")
            return

        if message.to != self.self_id:
            return

        logger.debug(f"<- {kind.value} from {message.sender}")
        for handler in list(self.handlers[kind]):
            try:
                handler(message)
            except Exception as e:
                logger.error(f"Handler for {kind.value} from {message.sender} failed: {e}", exc_info=True)

    def close(self):
        if not self._attached:
            return
        self._attached = False
        self.channel.remove_listener("broadcast", self._on_broadcast)
        for handlers in self.handlers.values():
            handlers.clear()
