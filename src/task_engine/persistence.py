# persistence.py
# Step and final-result recording.
#
# Recorders are called in the background by the orchestrator. A recorder
# may raise; the orchestrator logs the failure and carries on.

import asyncio
import json
import logging
from pathlib import Path
from typing import Protocol

from task_engine.models import ExecutionStep

logger = logging.getLogger(__name__)


class StepRecorder(Protocol):
    async def record_step(self, task_id: str, step: ExecutionStep) -> None: ...

    async def record_final(self, task_id: str, summary: str) -> None: ...


class NullRecorder:
    """Discards everything."""

    async def record_step(self, task_id: str, step: ExecutionStep) -> None:
        return None

    async def record_final(self, task_id: str, summary: str) -> None:
        return None


class JsonlRecorder:
    """Appends one JSON line per step or final result to a file."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    def _append(self, record: dict) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")

    async def _write(self, record: dict) -> None:
        async with self._lock:
            await asyncio.to_thread(self._append, record)

    async def record_step(self, task_id: str, step: ExecutionStep) -> None:
        await self._write({"task_id": task_id, "type": "step", "step": step.model_dump(mode="json")})

    async def record_final(self, task_id: str, summary: str) -> None:
        await self._write({"task_id": task_id, "type": "final", "summary": summary})
