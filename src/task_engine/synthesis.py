# synthesis.py
# Human-readable output: per-step formatting and the final answer.
#
# Both stream from the summarisation capability and fall back to plain
# text built from the results when the stream fails.

import logging
from typing import AsyncIterator

from task_engine.config import EngineConfig
from task_engine.llm import LLMCapability, LLMOptions, stream_with_timeout
from task_engine.models import ExecutionStep, WorkflowState

logger = logging.getLogger(__name__)

FORMAT_PROMPT = """\
Convert the following tool result into clear, readable Markdown for the user. \
Keep every number, name and link; do not add information that is not in the data.

Tool: {tool}
Result:
{data}\
"""

FINAL_PROMPT = """\
You are summarizing the outcome of an automated task for the user.

Goal: {goal}
Task status: {status}

Results of the successful steps:
{results}

Write a concise answer to the goal based only on these results. If the task \
did not finish, say what was achieved and what is missing.\
"""


def format_fallback(step: ExecutionStep, limit: int) -> str:
    if step.result is None:
        return f"{step.plan.tool} completed without output."
    return f"**{step.plan.tool}** result:\n\n{step.result.data_content(limit)}"


def final_fallback(state: WorkflowState, limit: int) -> str:
    successes = [s for s in state.execution_history if s.success and s.result is not None]
    if not successes:
        reason = state.errors[-1] if state.errors else "no step produced a result"
        return f"The task could not be completed: {reason}"
    parts = [f"Step {s.step_number} ({s.plan.tool}): {s.result.data_content(limit)}" for s in successes]
    return "\n\n".join(parts)


async def stream_formatted(
    llm: LLMCapability, step: ExecutionStep, config: EngineConfig
) -> AsyncIterator[str]:
    """Yield Markdown chunks for an external tool result."""
    prompt = FORMAT_PROMPT.format(
        tool=step.plan.tool,
        data=step.result.data_content(config.result_preview_chars) if step.result else "",
    )
    opts = LLMOptions(purpose="format", timeout_s=config.llm_timeout_s)
    async for chunk in stream_with_timeout(llm, [{"role": "user", "content": prompt}], opts):
        yield chunk


async def stream_final_answer(
    llm: LLMCapability, state: WorkflowState, config: EngineConfig
) -> AsyncIterator[str]:
    """Yield the final answer in chunks, summarising all successful step results."""
    results = "\n\n".join(
        f"Step {s.step_number} ({s.plan.tool}):\n{s.result.data_content(config.result_preview_chars)}"
        for s in state.execution_history
        if s.success and s.result is not None
    )
    status = "completed" if state.is_complete else "stopped before completion"
    prompt = FINAL_PROMPT.format(goal=state.goal, status=status, results=results or "(none)")
    opts = LLMOptions(purpose="summarize", timeout_s=config.llm_timeout_s)
    async for chunk in stream_with_timeout(llm, [{"role": "user", "content": prompt}], opts):
        yield chunk
