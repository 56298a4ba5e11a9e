#!/usr/bin/env python3
"""
Kaleidoplan Player Runner - command line front end for the playback layer

    python run.py status
    python run.py login
    python run.py resolve spotify:track:4uLU6hMCjMI75M1A2tKUQC
    python run.py enhance playlist.json --output enhanced.json
    python run.py logout
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from kaleidoplan.api.http import close_http_client
from kaleidoplan.config import load_config, load_credentials
from kaleidoplan.services.playback_service import PlaybackService
from kaleidoplan.services.playback_session import PlaybackSession
from kaleidoplan.utils.logger import setup_logger
from kaleidoplan.version import get_full_version


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=get_full_version())
    parser.add_argument("--dev", action="store_true", help="Verbose development logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show authentication and premium status")
    sub.add_parser("login", help="Connect a Spotify account in the browser")
    sub.add_parser("logout", help="Forget stored Spotify tokens")

    resolve = sub.add_parser("resolve", help="Resolve how a track would be played")
    resolve.add_argument("track_id", help="Track id, spotify:track: URI or open.spotify.com link")

    enhance = sub.add_parser("enhance", help="Enrich a stored playlist document")
    enhance.add_argument("playlist", type=Path, help="Playlist JSON document")
    enhance.add_argument("--output", type=Path, help="Write the enriched document here instead of stdout")
    return parser


async def _run(args: argparse.Namespace) -> int:
    config = load_config()
    if not args.dev:
        logging.getLogger("kaleidoplan").setLevel(config.log_level)
    session = PlaybackSession(config, load_credentials())
    service = PlaybackService(session)
    await service.start()

    try:
        if args.command == "status":
            result = await service.get_authentication_status()
            if result.success and result.data.get("user_authenticated"):
                premium = await service.get_premium_status()
                result.data["premium"] = bool(premium.success and premium.data.get("premium"))
        elif args.command == "login":
            result = await service.login()
        elif args.command == "logout":
            result = await service.logout()
        elif args.command == "resolve":
            result = await service.resolve_track(args.track_id)
        else:
            document = json.loads(args.playlist.read_text(encoding="utf-8"))
            result = await service.enhance_playlist(document)
            if result.success and args.output:
                args.output.write_text(json.dumps(result.data, indent=2), encoding="utf-8")
                result.data = {"written_to": str(args.output)}

        print(json.dumps(result.to_dict(), indent=2, default=str))
        return 0 if result.success else 1
    finally:
        await session.close()
        await close_http_client()


if __name__ == "__main__":
    args = _build_parser().parse_args()
    setup_logger("kaleidoplan")
    sys.exit(asyncio.run(_run(args)))
