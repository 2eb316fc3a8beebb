#!/usr/bin/env python3
"""
Headless meeting participant.
Joins a meeting through the relay service and reports roster changes.
"""
import argparse
import asyncio
import logging
import uuid

from app.config import fetch_ice_config, get_session_settings, setup_logging
from drivers.media import MediaAcquisitionError
from drivers.relay import RelayError
from service.session import create_session

logger = logging.getLogger("participant")


async def run(meeting_id: str, user_id: str, display_name: str, synthetic: bool):
    settings = get_session_settings()
    if synthetic:
        settings["media_backend"] = "synthetic"

    ice_config = await asyncio.to_thread(fetch_ice_config, settings["relay_http_url"])
    session = create_session(meeting_id, user_id, display_name, settings=settings, ice_config=ice_config)
    session.on("participant_joined", lambda p: logger.info(f"+ {p.display_name} ({p.user_id})"))
    session.on("participant_removed", lambda uid, reason: logger.info(f"- {uid} ({reason.value})"))
    session.on("stream_attached", lambda uid, stream: logger.info(f"stream from {uid}: {stream!r}"))

    try:
        await session.join()
    except (MediaAcquisitionError, RelayError) as e:
        logger.error(f"Cannot join meeting {meeting_id}: {e}")
        return 1

    try:
        await asyncio.Future()
    finally:
        await session.leave()
    return 0


def main():
    parser = argparse.ArgumentParser(description="Join a meeting as a headless participant")
    parser.add_argument("meeting_id")
    parser.add_argument("--user-id", default=None)
    parser.add_argument("--name", default="Bot")
    parser.add_argument("--synthetic", action="store_true", help="send generated audio/video")
    args = parser.parse_args()

    setup_logging()
    user_id = args.user_id or str(uuid.uuid4())
    try:
        raise SystemExit(asyncio.run(run(args.meeting_id, user_id, args.name, args.synthetic)))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
