"""
Drive a running transcriber server with a fake meeting.

Connects to /ws/page as the host page shim, adds one sink per speaker,
streams a tone per speaker in real time and prints the events that arrive
on /ws/ui/{session_id}.

    uvicorn server.asgi:app --app-dir backend
    python tools/simulate_meeting.py --speakers alice bob --seconds 5
"""

import argparse
import asyncio
import json

import numpy as np
from websockets.asyncio.client import connect

from protocol.binary import encode_relay_frame

SAMPLE_RATE_HZ = 48_000
BLOCK_S = 0.02


async def _print_events(url: str) -> None:
    async with connect(url) as ws:
        async for raw in ws:
            event = json.loads(raw)
            print("UI", event.get("type"), json.dumps(event.get("data", event)))


async def run(host: str, speakers: list[str], seconds: float, prefix: str) -> None:
    async with connect(f"ws://{host}/ws/page") as page:
        hello = json.loads(await page.recv())
        session_id = hello["session_id"]
        print("session", session_id)

        ui_task = asyncio.create_task(_print_events(f"ws://{host}/ws/ui/{session_id}"))

        await page.send(json.dumps({"type": "container_added", "element_id": "topRoomDiv"}))
        for user_id in speakers:
            await page.send(json.dumps({
                "type": "sink_added",
                "element_id": f"{prefix}{user_id}",
                "container_id": "topRoomDiv",
                "stream_id": f"stream-{user_id}",
                "sample_rate": SAMPLE_RATE_HZ,
            }))

        block = int(SAMPLE_RATE_HZ * BLOCK_S)
        seq = 1
        for n in range(int(seconds / BLOCK_S)):
            t = (np.arange(block) + n * block) / SAMPLE_RATE_HZ
            for i, user_id in enumerate(speakers):
                tone = (0.3 * np.sin(2 * np.pi * (220 + 110 * i) * t)).astype(np.float32)
                await page.send(encode_relay_frame(sequence_num=seq, stream_id=f"stream-{user_id}", samples=tone))
                seq += 1
            await asyncio.sleep(BLOCK_S)

        for user_id in speakers:
            await page.send(json.dumps({"type": "track_ended", "stream_id": f"stream-{user_id}"}))

        # Give the worker time to flush and transcribe
        await asyncio.sleep(5)
        ui_task.cancel()


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="127.0.0.1:8000")
    parser.add_argument("--speakers", nargs="+", default=["alice", "bob"])
    parser.add_argument("--seconds", type=float, default=5.0)
    parser.add_argument("--prefix", default="msRemAudio-")
    args = parser.parse_args()

    asyncio.run(run(args.host, args.speakers, args.seconds, args.prefix))
