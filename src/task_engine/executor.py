# executor.py
# Runs one ExecutionPlan.
#
# External tools go through: service normalisation → tool resolution
# (exact, fuzzy, model reselection) → parameter adaptation (key casing,
# model rewrite from the previous result, key casing again) → invocation
# with a timeout → follow-up chain. LLM capabilities are a single model
# call. execute() absorbs every error into the returned outcome.

import asyncio
import json
import logging
import re
from typing import Any

from pydantic import BaseModel, Field

from task_engine.adapters import ToolAdapter, ToolSpec, normalize_service
from task_engine.config import EngineConfig
from task_engine.errors import ExternalToolError, ExtractionError, ToolNotFoundError
from task_engine.extractor import extract_json
from task_engine.failures import ErrorDetails, describe_error
from task_engine.llm import LLMCapability, LLMOptions, complete_with_timeout
from task_engine.models import ExecutionPlan, TaskSession, ToolKind, WorkflowState
from task_engine.planner import Catalog
from task_engine.postprocess import apply_follow_ups
from task_engine.results import TextResult, ToolResult, to_result

logger = logging.getLogger(__name__)

_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")

RESELECT_PROMPT = """\
You are an expert tool selector. The requested tool "{requested}" does not exist \
in service "{service}". Select the most functionally similar tool from the list below \
and adapt the parameters to its schema.

Original parameters:
{args}

Available tools:
{tools}

Respond with ONLY a JSON object:
{{
  "toolName": "exact tool name from the list",
  "inputParams": {{"param": "value"}},
  "reasoning": "why this tool was selected"
}}\
"""

ADAPT_PROMPT = """\
You are a parameter transformation assistant. Rewrite the arguments for a tool call \
so they match the tool's input schema exactly.

Tool: {tool}
Description: {description}
Input schema:
{schema}

Current arguments:
{args}
{previous}
Rules:
- Use the EXACT property names from the input schema.
- Use real content from the previous step result. Never write placeholders or \
descriptions such as "summary of the results".
- If data is truly missing, use an empty string, never invented text.
- Any message or post text must be at most {limit} characters, counting spaces, \
URLs and emojis. Shorten it if needed.

Respond with ONLY a JSON object:
{{
  "toolName": "{tool}",
  "inputParams": {{"param": "value"}},
  "reasoning": "brief explanation"
}}\
"""

CAPABILITY_PROMPT = """\
You are an AI assistant performing one step of a larger task.

Overall goal: {goal}
Capability: {tool}
Step input:
{args}
{previous}
Perform the capability on the input and reply with the result only.\
"""


class ExecutionOutcome(BaseModel):
    """What happened when a plan was executed."""

    success: bool
    tool: str
    service: str | None = None
    args: dict[str, Any] = Field(default_factory=dict)
    result: ToolResult | None = None
    error: str | None = None
    error_details: ErrorDetails | None = None
    notes: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Key casing
# ---------------------------------------------------------------------------


def camel_to_snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub(r"\1_\2", name).lower()


def _squash(name: str) -> str:
    return name.replace("_", "").replace("-", "").lower()


def normalize_keys(args: dict[str, Any], property_names: list[str]) -> dict[str, Any]:
    """
    Rename argument keys to the schema's declared property names.

    camelCase keys are tried as snake_case first, then any casing or
    separator difference is matched. Unknown keys are kept unchanged.
    """
    if not property_names:
        return dict(args)
    declared = set(property_names)
    squashed = {_squash(name): name for name in property_names}

    normalized: dict[str, Any] = {}
    for key, value in args.items():
        if key in declared:
            normalized[key] = value
            continue
        snake = camel_to_snake(key)
        if snake in declared:
            target = snake
        else:
            target = squashed.get(_squash(key), key)
        if target != key:
            logger.debug("Renamed argument %s -> %s", key, target)
        normalized[target] = value
    return normalized


def _describe_tools(specs: list[ToolSpec]) -> str:
    return "\n".join(
        f"- {spec.name}: {spec.description or 'No description'}\n"
        f"  inputSchema: {json.dumps(spec.parameter_schema)}"
        for spec in specs
    )


def _previous_result(state: WorkflowState, limit: int) -> str:
    step = state.last_successful_step
    if step is None or step.result is None:
        return ""
    return f"\nPrevious step result ({step.plan.tool}):\n{step.result.preview(limit)}\n"


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class Executor:
    def __init__(self, llm: LLMCapability, adapter: ToolAdapter, config: EngineConfig) -> None:
        self._llm = llm
        self._adapter = adapter
        self._config = config

    def _opts(self, purpose: str, temperature: float | None = None) -> LLMOptions:
        return LLMOptions(purpose=purpose, temperature=temperature, timeout_s=self._config.llm_timeout_s)

    async def _bounded(self, coro: Any, service: str, what: str) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=self._config.tool_timeout_s)
        except asyncio.TimeoutError as exc:
            raise ExternalToolError(
                f"ETIMEDOUT: {what} on {service} exceeded {self._config.tool_timeout_s:g}s",
                service=service,
            ) from exc

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def list_tools(self, service: str, principal: str) -> list[ToolSpec]:
        return await self._bounded(self._adapter.list_tools(service, principal), service, "list_tools")

    async def discover(self, services: list[str], principal: str) -> Catalog:
        """
        Tool lists per service for the planner. A service that cannot be
        listed maps to None and is shown as needing a connection.
        """
        catalog: Catalog = {}
        for name in services:
            service = normalize_service(name, self._config.service_aliases)
            try:
                catalog[service] = await self.list_tools(service, principal)
            except Exception as exc:
                logger.warning("Could not list tools for %s: %s", service, exc)
                catalog[service] = None
        return catalog

    # ------------------------------------------------------------------
    # Tool resolution
    # ------------------------------------------------------------------

    async def resolve_tool(
        self, service: str, requested: str, specs: list[ToolSpec], args: dict[str, Any]
    ) -> tuple[ToolSpec, dict[str, Any]]:
        """
        Find the catalog tool for a requested name.

        Returns the tool and the arguments to use with it; reselection by
        the model may supply adapted arguments. Raises ToolNotFoundError.
        """
        for spec in specs:
            if spec.name == requested:
                return spec, args

        if requested:
            wanted = _squash(requested)
            for spec in specs:
                name = _squash(spec.name)
                if wanted in name or name in wanted:
                    logger.info("Fuzzy-matched tool %r to %r on %s", requested, spec.name, service)
                    return spec, args

        if not specs:
            raise ToolNotFoundError(f"Service {service} exposes no tools.", service=service, tool=requested)

        prompt = RESELECT_PROMPT.format(
            requested=requested,
            service=service,
            args=json.dumps(args, indent=2, default=str),
            tools=_describe_tools(specs),
        )
        try:
            raw = await complete_with_timeout(
                self._llm, [{"role": "system", "content": prompt}], self._opts("reselect", 0.1)
            )
            choice = extract_json(raw)
        except (ExtractionError, asyncio.TimeoutError) as exc:
            raise ToolNotFoundError(
                f"Tool {requested!r} not found on {service} and reselection failed: {exc}",
                service=service,
                tool=requested,
            ) from exc

        chosen = choice.get("toolName") if isinstance(choice, dict) else None
        for spec in specs:
            if spec.name == chosen:
                logger.info("Reselected tool %r as %r on %s", requested, spec.name, service)
                params = choice.get("inputParams")
                return spec, params if isinstance(params, dict) and params else args

        raise ToolNotFoundError(
            f"Tool {requested!r} not found on {service}; reselection proposed {chosen!r}.",
            service=service,
            tool=requested,
        )

    # ------------------------------------------------------------------
    # Parameter adaptation
    # ------------------------------------------------------------------

    async def adapt_parameters(self, spec: ToolSpec, args: dict[str, Any], state: WorkflowState) -> dict[str, Any]:
        properties = spec.property_names
        normalized = normalize_keys(args, properties)

        prompt = ADAPT_PROMPT.format(
            tool=spec.name,
            description=spec.description or "No description",
            schema=json.dumps(spec.parameter_schema, indent=2),
            args=json.dumps(normalized, indent=2, default=str),
            previous=_previous_result(state, self._config.result_preview_chars),
            limit=self._config.message_length_limit,
        )
        try:
            raw = await complete_with_timeout(
                self._llm, [{"role": "system", "content": prompt}], self._opts("adapt", 0.1)
            )
            converted = extract_json(raw)
        except (ExtractionError, asyncio.TimeoutError) as exc:
            logger.warning("Parameter conversion for %s failed, keeping normalized args: %s", spec.name, exc)
            return normalized

        params = converted.get("inputParams") if isinstance(converted, dict) else None
        if not isinstance(params, dict):
            return normalized
        return normalize_keys(params, properties)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run_capability(self, plan: ExecutionPlan, state: WorkflowState) -> TextResult:
        prompt = CAPABILITY_PROMPT.format(
            goal=state.goal,
            tool=plan.tool,
            args=json.dumps(plan.args, indent=2, default=str),
            previous=_previous_result(state, self._config.result_preview_chars),
        )
        try:
            text = await complete_with_timeout(
                self._llm, [{"role": "system", "content": prompt}], self._opts("execute")
            )
        except asyncio.TimeoutError as exc:
            raise ExternalToolError(f"ETIMEDOUT: llm capability {plan.tool} timed out") from exc
        return TextResult(text=text)

    async def _run_external(
        self, plan: ExecutionPlan, state: WorkflowState, principal: str, outcome: ExecutionOutcome
    ) -> ToolResult:
        service = outcome.service
        specs = await self.list_tools(service, principal)
        spec, args = await self.resolve_tool(service, plan.tool, specs, plan.args)
        outcome.tool = spec.name
        args = await self.adapt_parameters(spec, args, state)
        outcome.args = args

        logger.info("Invoking %s.%s", service, spec.name)
        raw = await self._bounded(self._adapter.invoke(service, spec.name, args, principal), service, spec.name)
        raw = await apply_follow_ups(
            self._config.follow_up_rules,
            self._adapter,
            service,
            spec.name,
            raw,
            principal,
            outcome.notes,
            timeout_s=self._config.tool_timeout_s,
        )
        return to_result(raw)

    async def execute(
        self, plan: ExecutionPlan, state: WorkflowState, session: TaskSession | None = None
    ) -> ExecutionOutcome:
        principal = session.principal if session else "anonymous"
        outcome = ExecutionOutcome(
            success=False,
            tool=plan.tool,
            service=normalize_service(plan.service_name, self._config.service_aliases),
            args=dict(plan.args),
        )
        try:
            if plan.is_completion_claim:
                outcome.result = TextResult(text=f"Planner reports the goal as complete: {plan.reasoning}")
            elif plan.tool_kind is ToolKind.LLM:
                outcome.result = await self._run_capability(plan, state)
            else:
                outcome.result = await self._run_external(plan, state, principal, outcome)
        except (ToolNotFoundError, ExternalToolError) as exc:
            return self._failed(outcome, str(exc))
        except Exception as exc:
            logger.exception("Unexpected error executing %s", plan.tool)
            return self._failed(outcome, f"{type(exc).__name__}: {exc}")

        outcome.success = True
        return outcome

    def _failed(self, outcome: ExecutionOutcome, message: str) -> ExecutionOutcome:
        logger.warning("Step %s failed: %s", outcome.tool, message)
        outcome.error = message
        outcome.error_details = describe_error(message, outcome.service)
        return outcome
