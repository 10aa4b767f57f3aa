# fakes.py
# Deterministic stand-ins for the engine's collaborators.

import inspect
import json
from collections import defaultdict, deque
from typing import Any, AsyncIterator

from task_engine.adapters import ToolSpec
from task_engine.errors import ExternalToolError
from task_engine.llm import LLMOptions

DEFAULT_STREAM = ["Done."]


class ScriptedLLM:
    """
    LLM capability scripted per call purpose.

    complete() pops the next response queued for opts.purpose; a response
    that is an Exception is raised instead. With nothing queued it returns
    "{}". stream() yields the queued chunk list for the purpose, or
    DEFAULT_STREAM.
    """

    def __init__(self, **scripts: list) -> None:
        self._scripts: dict[str, deque] = defaultdict(deque)
        for purpose, responses in scripts.items():
            self._scripts[purpose].extend(responses)
        self.calls: list[tuple[str, list[dict]]] = []

    def queue(self, purpose: str, *responses: Any) -> None:
        self._scripts[purpose].extend(responses)

    def prompts(self, purpose: str) -> list[str]:
        return ["\n".join(m["content"] for m in messages) for p, messages in self.calls if p == purpose]

    def _next(self, purpose: str, default: Any) -> Any:
        queue = self._scripts[purpose]
        response = queue.popleft() if queue else default
        if isinstance(response, Exception):
            raise response
        return response

    async def complete(self, messages: list[dict], opts: LLMOptions) -> str:
        self.calls.append((opts.purpose, messages))
        response = self._next(opts.purpose, "{}")
        return response if isinstance(response, str) else json.dumps(response)

    async def stream(self, messages: list[dict], opts: LLMOptions) -> AsyncIterator[str]:
        self.calls.append((opts.purpose, messages))
        chunks = self._next(opts.purpose, DEFAULT_STREAM)
        for chunk in chunks:
            yield chunk


def schema(*names: str, required: list[str] | None = None) -> dict:
    return {
        "type": "object",
        "properties": {name: {"type": "string"} for name in names},
        "required": required or list(names),
    }


class FakeToolAdapter:
    """
    In-memory tool catalog.

    `tools` maps service -> list of ToolSpec; `handlers` maps
    (service, tool) -> a callable taking args, a plain value, or an
    Exception to raise. A callable may return an awaitable. Every
    invocation is recorded in `calls`.
    """

    def __init__(self, tools: dict[str, list[ToolSpec]], handlers: dict[tuple[str, str], Any] | None = None) -> None:
        self.tools = tools
        self.handlers = handlers or {}
        self.calls: list[tuple[str, str, dict]] = []

    async def list_tools(self, service: str, principal: str) -> list[ToolSpec]:
        if service not in self.tools:
            raise ExternalToolError(f"Not connected: {service}", service=service)
        return self.tools[service]

    async def invoke(self, service: str, tool: str, args: dict, principal: str) -> Any:
        self.calls.append((service, tool, dict(args)))
        handler = self.handlers.get((service, tool), {"ok": True})
        if isinstance(handler, Exception):
            raise handler
        if callable(handler):
            result = handler(args)
            return await result if inspect.isawaitable(result) else result
        return handler


class MemoryRecorder:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.steps: list[tuple[str, int]] = []
        self.finals: list[tuple[str, str]] = []

    async def record_step(self, task_id: str, step) -> None:
        if self.fail:
            raise RuntimeError("database unavailable")
        self.steps.append((task_id, step.step_number))

    async def record_final(self, task_id: str, summary: str) -> None:
        if self.fail:
            raise RuntimeError("database unavailable")
        self.finals.append((task_id, summary))


def plan(tool: str, service: str | None = None, args: dict | None = None, kind: str | None = None, reasoning: str = "") -> str:
    data = {
        "tool": tool,
        "toolKind": kind or ("external" if service else "llm"),
        "args": args or {},
        "expectedOutput": "",
        "reasoning": reasoning or f"call {tool}",
    }
    if service:
        data["serviceName"] = service
    return json.dumps(data)


def observation(complete: bool, next_objective: str | None = None) -> str:
    return json.dumps({"isComplete": complete, "reasoning": "checked", "nextObjective": next_objective})
