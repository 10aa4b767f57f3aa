# observer.py
# Judges whether the goal is satisfied after each successful step.
#
# The planner's own "task_complete" claims are only context here: the
# observer always checks the accumulated results itself. Any failure
# defaults to continuing.

import logging
import re

from pydantic import BaseModel

from task_engine.config import EngineConfig
from task_engine.errors import ExtractionError, ObservationError
from task_engine.extractor import extract_json
from task_engine.llm import LLMCapability, LLMOptions, complete_with_timeout
from task_engine.models import WorkflowState

logger = logging.getLogger(__name__)

_COMPLETION = re.compile(
    r"task (is )?complete|analysis complete|execution complete|completed|"
    r"all steps completed|workflow complete|goal (is )?(achieved|satisfied)",
    re.IGNORECASE,
)
_NEGATION = re.compile(
    r"not\b.*\bcomplete|incomplete|insufficient|missing|need.*more|continue|"
    r"require|still need to|next step",
    re.IGNORECASE,
)
_ERRORS = re.compile(
    r"error|failed|\b403\b|\b500\b|unable to|cannot|could not|not found",
    re.IGNORECASE,
)

OBSERVER_SYSTEM_PROMPT = """\
You are the observation component of an autonomous agent. Decide whether the \
user's goal has been FULLY achieved by the steps executed so far.

Judge from the actual results, not from intentions. If any part of the goal \
(for example "get X and then post it") has not produced a real result yet, the \
task is not complete.

Respond with ONLY a JSON object:
{
  "isComplete": true | false,
  "reasoning": "what the results show",
  "nextObjective": "what must happen next (when not complete)"
}\
"""


class Observation(BaseModel):
    is_complete: bool
    reasoning: str = ""
    next_objective: str | None = None


def heuristic_observation(text: str) -> Observation:
    """
    Keyword fallback for unparseable observer output.

    Errors without a completion claim, negations, and plain ambiguity all
    mean "continue"; only an unqualified completion statement completes.
    """
    completed = bool(_COMPLETION.search(text))
    negated = bool(_NEGATION.search(text))
    errored = bool(_ERRORS.search(text))

    if errored and not completed:
        return Observation(is_complete=False, reasoning="Heuristic: errors reported, continuing.")
    if completed and not negated:
        return Observation(is_complete=True, reasoning="Heuristic: completion stated.")
    return Observation(is_complete=False, reasoning="Heuristic: completion unclear, continuing.")


def build_observer_messages(state: WorkflowState, preview_chars: int) -> list[dict]:
    lines: list[str] = []
    for step in state.execution_history:
        where = f" @ {step.plan.service_name}" if step.plan.service_name else ""
        status = "success" if step.success else "failed"
        lines.append(f"Step {step.step_number}: {step.plan.tool}{where} [{status}]")
        lines.append(f"  reasoning: {step.plan.reasoning}")
        if step.success and step.result is not None:
            lines.append(f"  result: {step.result.preview(preview_chars)}")
        elif step.error:
            lines.append(f"  error: {step.error}")

    claims = state.completion_claims
    claim_note = ""
    if claims:
        claim_note = (
            f"\nThe planner has claimed completion {claims} time(s). Don't automatically "
            "assume the task is complete because of that; verify that the results above "
            "actually contain everything the goal asks for.\n"
        )

    user = (
        f"Goal: {state.goal}\n"
        f"Current objective: {state.current_objective or state.goal}\n\n"
        "Execution history:\n" + "\n".join(lines or ["(no steps yet)"]) + "\n" + claim_note
    )
    return [
        {"role": "system", "content": OBSERVER_SYSTEM_PROMPT},
        {"role": "user", "content": user},
    ]


class Observer:
    def __init__(self, llm: LLMCapability, config: EngineConfig) -> None:
        self._llm = llm
        self._config = config

    def parse_observation(self, raw: str) -> Observation:
        try:
            data = extract_json(raw)
        except ExtractionError as exc:
            logger.warning("Observer output unparseable, using keyword heuristic: %s", exc)
            return heuristic_observation(raw)
        if not isinstance(data, dict):
            return heuristic_observation(raw)

        next_objective = data.get("nextObjective")
        return Observation(
            is_complete=data.get("isComplete") is True,
            reasoning=str(data.get("reasoning") or ""),
            next_objective=str(next_objective) if next_objective else None,
        )

    async def _ask(self, state: WorkflowState) -> str:
        messages = build_observer_messages(state, self._config.result_preview_chars)
        opts = LLMOptions(
            purpose="observe",
            temperature=self._config.observer_temperature,
            timeout_s=self._config.llm_timeout_s,
        )
        try:
            return await complete_with_timeout(self._llm, messages, opts)
        except Exception as exc:
            raise ObservationError(f"Observer model call failed: {exc}") from exc

    async def observe(self, state: WorkflowState) -> Observation:
        try:
            raw = await self._ask(state)
        except ObservationError as exc:
            logger.warning("%s; continuing", exc)
            return Observation(is_complete=False, reasoning=str(exc))

        observation = self.parse_observation(raw)
        logger.info("Observation: complete=%s (%s)", observation.is_complete, observation.reasoning[:120])
        return observation
