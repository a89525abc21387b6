#!/usr/bin/env python3
"""
chatrelay Quickstart — send a message and watch it arrive.

Opens a WebSocket on /ws/messages, posts a message through the REST API,
and prints what the socket receives.
Run with: python examples/quickstart.py

Requires: pip install httpx websockets (both come with chatrelay)
Backend must be running: chatrelay serve (http://localhost:4000)
"""

import asyncio
import json
import sys

import httpx
import websockets

BASE = "http://localhost:4000/api/v1"
WS_URL = "ws://localhost:4000/ws/messages"


async def main():
    async with httpx.AsyncClient(base_url=BASE, timeout=10) as client:
        # ── Health check ──────────────────────────────────────────────
        print("Checking backend health...")
        try:
            resp = await client.get("/health")
        except httpx.ConnectError:
            print(f"Backend not reachable at {BASE}")
            sys.exit(1)
        health = resp.json()
        print(f"  Redis: {'✓' if health['redis'] == 'ok' else '✗'}")

        # ── Seed messages ─────────────────────────────────────────────
        resp = await client.get("/messages")
        for message in resp.json():
            print(f"  [{message['author']}] {message['content']}")

        # ── Subscribe, then send ──────────────────────────────────────
        async with websockets.connect(WS_URL) as ws:
            # The server subscribes on its first pull; give it a moment
            await ws.send(json.dumps({"type": "ping"}))
            await ws.recv()
            await asyncio.sleep(0.2)

            print("\nSending a message...")
            resp = await client.post(
                "/messages", json={"content": "hello from quickstart", "author": "demo"}
            )
            assert resp.status_code == 200, f"Failed: {resp.text}"

            received = json.loads(await asyncio.wait_for(ws.recv(), timeout=5))
            print(f"  Received over WebSocket: [{received['author']}] {received['content']}")


if __name__ == "__main__":
    asyncio.run(main())
