# planner.py
# Chooses the next action.
#
# One low-temperature model call per iteration. The response goes through
# the extractor, then a corrective pass for the common confusion of tool
# and service names. Any failure yields a deterministic fallback plan, so
# plan() never raises and the loop always has something to execute.

import json
import logging
import re
from typing import Any

from pydantic import ValidationError

from task_engine.adapters import ToolSpec, normalize_service
from task_engine.config import EngineConfig
from task_engine.errors import ExtractionError, PlanningError
from task_engine.extractor import extract_json
from task_engine.llm import LLMCapability, LLMOptions, complete_with_timeout
from task_engine.models import TASK_COMPLETE_TOOL, ExecutionPlan, TaskSession, ToolKind, WorkflowState

logger = logging.getLogger(__name__)

Catalog = dict[str, list[ToolSpec] | None]

FALLBACK_TOOL = "process"

_TOOL_NAME = re.compile(r"^[a-z][a-zA-Z0-9_]*$")

_KIND_ALIASES = {
    "mcp": ToolKind.EXTERNAL,
    "external": ToolKind.EXTERNAL,
    "externaltool": ToolKind.EXTERNAL,
    "tool": ToolKind.EXTERNAL,
    "llm": ToolKind.LLM,
    "llmcapability": ToolKind.LLM,
}

PLANNER_SYSTEM_PROMPT = """\
You are the planning component of an autonomous agent. Choose exactly ONE next \
action that moves the user's goal forward, using the execution history to avoid \
repeating work that already succeeded.

Respond with ONLY a JSON object matching this schema:

{
  "tool": "exact tool name from the catalog, or an llm capability such as analyze / summarize / compose",
  "toolKind": "external" | "llm",
  "serviceName": "service that owns the tool (external tools only)",
  "args": {"param_name": "value"},
  "expectedOutput": "what this step should produce",
  "reasoning": "why this is the right next step"
}

Rules:
- "tool" is WHAT to call, "serviceName" is WHERE it lives. Never swap them.
- Use tool names exactly as they appear in the catalog.
- Use real values from previous results in args, never placeholders.
- If the goal is already fully satisfied by the history, use tool "task_complete" \
with toolKind "llm". The completion will be verified independently.\
"""


# ---------------------------------------------------------------------------
# Prompt construction
# ---------------------------------------------------------------------------


def _format_catalog(catalog: Catalog) -> str:
    if not catalog:
        return "(no external services available, use llm capabilities)"
    lines: list[str] = []
    for service, specs in catalog.items():
        if specs is None:
            lines.append(f"- {service}: (connection needed, tools unknown)")
        elif not specs:
            lines.append(f"- {service}: (no tools)")
        else:
            lines.append(f"- {service}: {', '.join(spec.name for spec in specs)}")
    return "\n".join(lines)


def _format_history(state: WorkflowState) -> str:
    if not state.execution_history:
        return "(no steps yet)"
    lines: list[str] = []
    for step in state.execution_history:
        status = "success" if step.success else f"failed: {step.error}"
        where = f" @ {step.plan.service_name}" if step.plan.service_name else ""
        lines.append(f"{step.step_number}. {step.plan.tool}{where} [{status}]: {step.plan.reasoning}")
        if step.success and step.result is not None:
            lines.append(f"   result: {step.result.preview(300)}")
    return "\n".join(lines)


def _format_session(session: TaskSession | None) -> str:
    if session is None or not session.turns:
        return ""
    lines = ["Earlier in this conversation:"]
    for turn in session.recent_turns():
        lines.append(f"- goal: {turn.goal}\n  answer: {turn.answer[:300]}")
    return "\n".join(lines) + "\n\n"


def build_planner_messages(state: WorkflowState, catalog: Catalog, session: TaskSession | None = None) -> list[dict]:
    user = (
        f"{_format_session(session)}"
        f"Goal: {state.goal}\n"
        f"Current objective: {state.current_objective or state.goal}\n\n"
        f"Execution history:\n{_format_history(state)}\n\n"
        f"Available services and tools:\n{_format_catalog(catalog)}\n\n"
        "What is the next action?"
    )
    return [
        {"role": "system", "content": PLANNER_SYSTEM_PROMPT},
        {"role": "user", "content": user},
    ]


# ---------------------------------------------------------------------------
# Correction heuristics
# ---------------------------------------------------------------------------


def _known_tools(catalog: Catalog) -> set[str]:
    return {spec.name for specs in catalog.values() if specs for spec in specs}


def _looks_like_service(name: str, catalog: Catalog, aliases: dict[str, str]) -> bool:
    if not name:
        return False
    lowered = name.lower()
    if "-mcp" in lowered:
        return True
    known = {s.lower() for s in catalog} | {a.lower() for a in aliases} | {c.lower() for c in aliases.values()}
    return lowered in known


def _looks_like_tool(name: str, catalog: Catalog) -> bool:
    return name in _known_tools(catalog) or bool(_TOOL_NAME.match(name))


def correct_tool_and_service(
    data: dict[str, Any], catalog: Catalog, aliases: dict[str, str] | None = None
) -> dict[str, Any]:
    """
    Undo the model confusing "what" (tool) with "where" (service).

    When the tool field holds a service name and serviceName holds something
    tool-like, the two are swapped. When the tool holds a service name and
    serviceName is empty, the tool moves to serviceName and is left blank
    for the executor to reselect.
    """
    aliases = aliases or {}
    tool = str(data.get("tool") or "").strip()
    service = str(data.get("serviceName") or "").strip()

    if not _looks_like_service(tool, catalog, aliases):
        return data

    corrected = dict(data)
    if not service:
        logger.warning("Planner put service %r in the tool field; leaving tool for reselection", tool)
        corrected["serviceName"] = tool
        corrected["tool"] = ""
        corrected["toolKind"] = ToolKind.EXTERNAL.value
    elif not _looks_like_service(service, catalog, aliases) and _looks_like_tool(service, catalog):
        logger.warning("Planner swapped tool and service (%r / %r); correcting", tool, service)
        corrected["tool"] = service
        corrected["serviceName"] = tool
    return corrected


def _normalize_kind(data: dict[str, Any]) -> ToolKind:
    raw = str(data.get("toolKind") or "").replace("_", "").lower()
    if raw in _KIND_ALIASES:
        return _KIND_ALIASES[raw]
    return ToolKind.EXTERNAL if data.get("serviceName") else ToolKind.LLM


def _infer_service(tool: str, catalog: Catalog) -> str | None:
    for service, specs in catalog.items():
        if specs and any(spec.name == tool for spec in specs):
            return service
    return None


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


def fallback_plan(raw: str, goal: str) -> ExecutionPlan:
    return ExecutionPlan(
        tool=FALLBACK_TOOL,
        tool_kind=ToolKind.LLM,
        args={"content": raw, "instruction": goal},
        expected_output="A direct answer produced without external tools.",
        reasoning="Fallback plan due to parsing error",
    )


class Planner:
    def __init__(self, llm: LLMCapability, config: EngineConfig) -> None:
        self._llm = llm
        self._config = config

    def parse_plan(self, raw: str, catalog: Catalog) -> ExecutionPlan:
        """
        Turn raw model text into a validated ExecutionPlan.

        Raises ExtractionError or ValidationError; plan() turns both into
        the fallback plan.
        """
        data = extract_json(raw)
        if not isinstance(data, dict):
            raise ExtractionError(f"Expected a JSON object, got {type(data).__name__}.")

        data = correct_tool_and_service(data, catalog, self._config.service_aliases)
        kind = _normalize_kind(data)
        tool = str(data.get("tool") or "").strip()
        service = normalize_service(str(data.get("serviceName") or "").strip() or None, self._config.service_aliases)

        if tool == TASK_COMPLETE_TOOL:
            kind, service = ToolKind.LLM, None
        elif kind is ToolKind.EXTERNAL and not service:
            service = _infer_service(tool, catalog)
            if service is None:
                logger.warning("No service owns tool %r; running it as an llm capability", tool)
                kind = ToolKind.LLM

        args = data.get("args") or data.get("input") or {}
        if not isinstance(args, dict):
            args = {"input": args}

        return ExecutionPlan(
            tool=tool,
            tool_kind=kind,
            service_name=service if kind is ToolKind.EXTERNAL else None,
            args=args,
            expected_output=str(data.get("expectedOutput") or ""),
            reasoning=str(data.get("reasoning") or ""),
        )

    async def plan(self, state: WorkflowState, catalog: Catalog, session: TaskSession | None = None) -> ExecutionPlan:
        messages = build_planner_messages(state, catalog, session)
        opts = LLMOptions(
            purpose="plan",
            temperature=self._config.planner_temperature,
            timeout_s=self._config.llm_timeout_s,
        )
        raw = ""
        try:
            try:
                raw = await complete_with_timeout(self._llm, messages, opts)
            except Exception as exc:
                raise PlanningError(f"Planner model call failed: {exc}") from exc
            plan = self.parse_plan(raw, catalog)
        except (PlanningError, ExtractionError, ValidationError) as exc:
            logger.warning("Planning fell back to the llm capability: %s", exc)
            return fallback_plan(raw or json.dumps({"goal": state.goal}), state.current_objective or state.goal)

        logger.info("Planned %s (%s) on %s", plan.tool or "<reselect>", plan.tool_kind.value, plan.service_name)
        return plan
