#!/usr/bin/env python3
"""
Spotify account connector for Kaleidoplan
Runs the browser sign-in once and stores the resulting tokens in the
configured token store, so later sessions refresh silently.
"""

import asyncio
import sys

from kaleidoplan.api.http import close_http_client
from kaleidoplan.config import load_config, load_credentials
from kaleidoplan.services.playback_session import PlaybackSession
from kaleidoplan.utils.logger import setup_logger


async def connect_spotify() -> bool:
    """Run the interactive grant and report the outcome"""
    config = load_config()
    credentials = load_credentials()

    print("🎵 Spotify account connector for Kaleidoplan")
    print("=" * 50)

    if not credentials.complete:
        print("❌ Error: SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET must be set in your .env file!")
        print("📝 Create ~/.kaleidoplan/.env with your Spotify app credentials.")
        return False

    session = PlaybackSession(config, credentials)
    try:
        await session.start()
        print(f"🌐 Opening browser for Spotify authorization ({config.grant})...")
        if not await session.token_manager.login():
            print("❌ Sign-in cancelled or failed")
            return False

        info = session.token_manager.get_cache_info()
        print("\n✅ Spotify account connected!")
        print("=" * 50)
        print(f"GRANT: {info['grant']}")
        print(f"EXPIRES_IN: {info.get('token_info', {}).get('time_until_expiry_seconds')} seconds")
        print(f"TOKEN_STORE: {config.token_store} ({config.token_path})")
        print("=" * 50)

        premium = await session.resolver.is_premium()
        if premium:
            print("🎉 Premium account - tracks play on the Connect device")
        else:
            print("ℹ️  No Premium - tracks fall back to preview clips")
        return True
    finally:
        await session.close()
        await close_http_client()


if __name__ == "__main__":
    setup_logger("kaleidoplan")
    sys.exit(0 if asyncio.run(connect_spotify()) else 1)
