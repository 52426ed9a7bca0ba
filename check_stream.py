# check_stream.py
# Manual end-to-end check against a running server: prepare, stream, cancel, resume.
import argparse
import asyncio
import json
import os
import sys

import httpx

from packages.client.session_registry import SessionRegistry
from packages.client.stream_controller import StreamController, terminal_label

HOST = os.getenv("RELAY_HOST", "http://127.0.0.1:8000")
TOKEN = os.getenv("RELAY_TOKEN", "dev")
MODEL = os.getenv("RELAY_MODEL", "qwen/qwen3-14b")


def pretty(obj): return json.dumps(obj, ensure_ascii=False, indent=2)


def echo(_message_id: str, text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


async def prepare(client: httpx.AsyncClient, prompt: str) -> tuple[str, str]:
    headers = {"Authorization": f"Bearer {TOKEN}"}
    r = await client.post("/threads", json={"title": prompt[:40]}, headers=headers)
    r.raise_for_status()
    thread_id = r.json()["id"]
    r = await client.post(f"/threads/{thread_id}/prepare", json={"content": prompt, "model": MODEL}, headers=headers)
    r.raise_for_status()
    return thread_id, r.json()["assistant_message"]["id"]


async def main(prompt: str, cancel_after: float, resume: bool) -> None:
    async with httpx.AsyncClient(base_url=HOST, timeout=None) as client:
        r = await client.get("/config")
        r.raise_for_status()
        print("== /config ==")
        print(pretty(r.json()))

        controller = StreamController(client, SessionRegistry(), token=TOKEN, on_text=echo)
        thread_id, message_id = await prepare(client, prompt)
        print(f"\n== stream {message_id} ==")
        gen_task = asyncio.create_task(controller.generate(thread_id, message_id, MODEL))

        if resume:
            await asyncio.sleep(0.5)
            tail = StreamController(client, SessionRegistry(), token=TOKEN)
            tail_task = asyncio.create_task(tail.resume(message_id, thread_id))
        if cancel_after > 0:
            await asyncio.sleep(cancel_after)
            await controller.cancel(thread_id, message_id)

        session = await gen_task
        print("\n-- end of stream --")
        print("state:", session.state.value, "|", terminal_label(session.state) or "completed")
        print("collected chars:", len(session.text))
        if resume:
            late = await tail_task
            print("resume state:", late.state.value, "| same text:", late.text == session.text)


if __name__ == "__main__":
    p = argparse.ArgumentParser()
    p.add_argument("prompt", nargs="?", default="Give three facts about black tea.")
    p.add_argument("--cancel-after", type=float, default=0.0)
    p.add_argument("--resume", action="store_true")
    args = p.parse_args()
    asyncio.run(main(args.prompt, args.cancel_after, args.resume))
