"""CLI demonstration of an orchestrated request streamed end to end.

Requires ``OPENAI_API_KEY`` (and optionally ``OPENAI_BASE_URL``/``OPENAI_MODEL``).
"""
from __future__ import annotations

import asyncio
import json
import sys
from typing import NoReturn

from switchboard.config import config
from switchboard.core.models import AgentRequest
from switchboard.main import DEFAULT_ORCHESTRATOR, bootstrap
from switchboard.runtime import build_app_context


async def main(message: str) -> None:
    ctx = bootstrap(build_app_context(config))
    orchestrator = ctx.registry.get(DEFAULT_ORCHESTRATOR).runner
    try:
        async for event in orchestrator.handle_stream(AgentRequest(message=message)):
            if event.event == "text-delta":
                print(event.data["text"], end="", flush=True)
            else:
                print(f"\n[{event.sequence_id}] {event.event} {json.dumps(event.data, default=str)}")
    finally:
        await ctx.close()


def run() -> NoReturn:
    message = " ".join(sys.argv[1:]) or "What time is it, and what is 17 * 23?"
    asyncio.run(main(message))
    sys.exit(0)


if __name__ == "__main__":
    run()
