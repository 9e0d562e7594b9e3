#!/usr/bin/env python3
"""Connect to the timeline stream and print every span it delivers.

Usage:
    CAUSABLE_API_URL=http://localhost:8000 CAUSABLE_API_KEY=dev python verify_stream.py
"""

import asyncio
import json
import os

from causable.sdk import CausableClient

API_URL = os.getenv("CAUSABLE_API_URL", "http://localhost:8000")
API_KEY = os.getenv("CAUSABLE_API_KEY", "dev")


async def main():
    async with CausableClient(API_URL, API_KEY) as client:
        print(f"Connecting to: {client.stream_url}")
        print("Waiting for events... (Ctrl+C to exit)\n")

        async for event in client.iter_timeline():
            if event.type == "connected":
                print(f"📡 {event.message}")
            elif event.type == "error":
                print(f"❌ Error: {event.message} (reconnecting)")
            elif event.span is not None:
                span = event.span
                print("─" * 50)
                print(json.dumps(span.model_dump(mode="json"), indent=2))
                print(f"  Summary: {span.who} {span.did or '?'} {span.this} [{span.entity_type}]")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n📡 Stream ended")
