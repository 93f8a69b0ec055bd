"""Minimal demonstration of a streaming chat turn with persisted history."""

import asyncio

from echomind.api.service import run_chat_stream, session_stats, shutdown


async def main() -> None:
    question = "用一句话介绍一下你自己"
    print("User:", question)
    print("Assistant: ", end="", flush=True)
    async for delta in run_chat_stream(question, session_id="demo"):
        print(delta.text_fragment, end="", flush=True)
    print()
    print("Stats:", session_stats("demo"))
    await shutdown()


if __name__ == "__main__":
    asyncio.run(main())
