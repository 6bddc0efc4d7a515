"""Minimal demonstration of a streamed chat turn against the offline mock model.

Without API keys the background title refinement fails quietly and the
conversation keeps its naive title.
"""

import asyncio

from companion_core import build_services, send_chat


async def main() -> None:
    services = build_services(persist=False)
    question = "Hello there, how are you today?"
    print("User:", question)
    print("Assistant: ", end="", flush=True)
    result = await send_chat(
        services,
        question,
        model_id="mock-model",
        stream=True,
        on_chunk=lambda chunk: print(chunk.content, end="", flush=True),
    )
    print()
    await services.context.drain()
    print("Title:", services.context.current_conversation.title)
    print("Usage:", result["usage"])


if __name__ == "__main__":
    asyncio.run(main())
