# run.py
# Entry point. Config and wiring only; no logic lives here.
#
# Services are configured through TASK_ENGINE_SERVICES, a JSON object of
# service name -> base URL, e.g.
#   TASK_ENGINE_SERVICES='{"coingecko-mcp": "http://localhost:3101"}'
# Any OpenRouter-supported model works: https://openrouter.ai/models

import asyncio
import logging
import os
import sys

from rich.logging import RichHandler

from task_engine import display
from task_engine.adapters import ConnectionRegistry, HttpToolAdapter
from task_engine.config import load_config
from task_engine.llm import OpenAILLM
from task_engine.models import TaskSession
from task_engine.orchestrator import Orchestrator
from task_engine.persistence import JsonlRecorder

RECORD_PATH = "./runs/steps.jsonl"

PROMPTS = [
    # Two dependent steps: fetch data, then publish it
    "Get bitcoin's current price and tweet it.",

    # No external service needed, pure llm capability
    "Explain in three sentences what a Merkle tree is.",
]


def _configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("TASK_ENGINE_LOG_LEVEL", "WARNING").upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=display.console, rich_tracebacks=True)],
    )


async def _run(goals: list[str]) -> None:
    config = load_config()
    registry = ConnectionRegistry({s.name: s.base_url for s in config.services}, timeout_s=config.tool_timeout_s)
    llm = OpenAILLM(config.llm)
    orchestrator = Orchestrator(
        llm=llm,
        adapter=HttpToolAdapter(registry),
        config=config,
        recorder=JsonlRecorder(RECORD_PATH),
    )
    session = TaskSession(services=[s.name for s in config.services])

    try:
        for goal in goals:
            async for event in orchestrator.run(goal, session):
                display.render(event)
        await orchestrator.drain()
    finally:
        await registry.close()
        await llm.close()


def main() -> None:
    _configure_logging()
    goals = [" ".join(sys.argv[1:])] if len(sys.argv) > 1 else PROMPTS
    asyncio.run(_run(goals))


if __name__ == "__main__":
    main()
