# orchestrator.py
# The plan → execute → observe control loop.
#
# One explicit state machine drives every task:
#
#   PLANNING → EXECUTING → OBSERVING → {PLANNING | COMPLETED | ABORTED}
#                  └─ failure ─→ {PLANNING | ABORTED}
#
# The loop is exposed as an async stream of Events. Before every PLANNING
# transition the continuation predicate and the cancel flag are checked.
# Only two things end a task early: that predicate, and a skip /
# manual_intervention strategy for the failing step. Persistence runs in
# background tasks and never blocks or fails the loop.

import asyncio
import logging
from enum import Enum
from typing import Any, AsyncIterator

from task_engine.adapters import ToolAdapter
from task_engine.config import EngineConfig
from task_engine.executor import ExecutionOutcome, Executor
from task_engine.failures import is_connection_error, record_failure
from task_engine.llm import LLMCapability
from task_engine.models import Event, ExecutionStep, SessionTurn, Strategy, TaskSession, ToolKind, WorkflowState
from task_engine.monitor import ProgressMonitor
from task_engine.observer import Observer
from task_engine.persistence import NullRecorder, StepRecorder
from task_engine.planner import Planner
from task_engine.synthesis import final_fallback, format_fallback, stream_final_answer, stream_formatted

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    OBSERVING = "observing"
    COMPLETED = "completed"
    ABORTED = "aborted"


TERMINAL_PHASES = (Phase.COMPLETED, Phase.ABORTED)


class TaskRun:
    """
    One task invocation: its state, monitor and event stream.

    Iterate it to drive the loop:

        run = orchestrator.start("get bitcoin's price and tweet it", session)
        async for event in run:
            ...
        run.state.is_complete
    """

    def __init__(self, orchestrator: "Orchestrator", goal: str, session: TaskSession, cancel: asyncio.Event | None) -> None:
        self._orchestrator = orchestrator
        self.session = session
        self.state = WorkflowState(goal=goal, current_objective=goal)
        self.monitor = ProgressMonitor()
        self.phase = Phase.PLANNING
        self.abort_reason: str | None = None
        self.final_answer = ""
        self._cancel = cancel or asyncio.Event()

    def cancel(self) -> None:
        """Request a stop; honoured before the next iteration starts."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def success(self) -> bool:
        return self.state.is_complete and not self.state.errors

    def abort(self, reason: str) -> None:
        logger.warning("Aborting task %s: %s", self.session.task_id, reason)
        self.abort_reason = reason
        self.state.errors.append(reason)
        self.phase = Phase.ABORTED

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._orchestrator._drive(self)


class Orchestrator:
    """
    Wires planner, executor and observer into a bounded loop.

    Example:
        orchestrator = Orchestrator(llm=OpenAILLM(settings), adapter=adapter)
        async for event in orchestrator.run("Summarise today's BTC news", session):
            display.render(event)
    """

    def __init__(
        self,
        llm: LLMCapability,
        adapter: ToolAdapter,
        config: EngineConfig | None = None,
        recorder: StepRecorder | None = None,
    ) -> None:
        self._llm = llm
        self._config = config or EngineConfig()
        self._recorder = recorder or NullRecorder()
        self.planner = Planner(llm, self._config)
        self.executor = Executor(llm, adapter, self._config)
        self.observer = Observer(llm, self._config)
        self._background: set[asyncio.Task] = set()

    @property
    def config(self) -> EngineConfig:
        return self._config

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def start(self, goal: str, session: TaskSession | None = None, cancel: asyncio.Event | None = None) -> TaskRun:
        return TaskRun(self, goal, session or TaskSession(), cancel)

    def run(self, goal: str, session: TaskSession | None = None, cancel: asyncio.Event | None = None) -> AsyncIterator[Event]:
        return self._drive(self.start(goal, session, cancel))

    async def drain(self) -> None:
        """Wait for pending background persistence writes."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Background persistence
    # ------------------------------------------------------------------

    def _spawn(self, coro: Any, what: str) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(lambda t: self._settle(t, what))

    def _settle(self, task: asyncio.Task, what: str) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Persisting %s failed: %s", what, exc)

    # ------------------------------------------------------------------
    # Event helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _event(run: TaskRun, name: str, **payload: Any) -> Event:
        payload.setdefault("task_id", run.session.task_id)
        payload.setdefault("iteration", run.state.iteration_count)
        return Event(name=name, payload=payload)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _drive(self, run: TaskRun) -> AsyncIterator[Event]:
        state = run.state
        yield self._event(
            run,
            "execution_start",
            goal=state.goal,
            services=list(run.session.services),
            max_iterations=self._config.max_iterations,
        )

        try:
            while run.phase not in TERMINAL_PHASES:
                if run.phase is Phase.PLANNING:
                    await self._plan(run)
                elif run.phase is Phase.EXECUTING:
                    async for event in self._execute(run):
                        yield event
                elif run.phase is Phase.OBSERVING:
                    async for event in self._observe(run):
                        yield event

            async for event in self._finish(run):
                yield event
        except Exception as exc:
            logger.exception("Task %s failed unexpectedly", run.session.task_id)
            state.errors.append(str(exc))
            yield self._event(
                run,
                "task_execution_error",
                error=str(exc),
                error_type=type(exc).__name__,
                steps=len(state.execution_history),
            )

    async def _plan(self, run: TaskRun) -> None:
        state = run.state
        reason = run.monitor.stop_reason(state.iteration_count, self._config)
        if reason is None and run.cancelled:
            reason = "Cancelled by caller."
        if reason is not None:
            run.abort(reason)
            return

        state.iteration_count += 1
        catalog = await self.executor.discover(run.session.services, run.session.principal)
        state.current_plan = await self.planner.plan(state, catalog, run.session)
        run.phase = Phase.EXECUTING

    async def _execute(self, run: TaskRun) -> AsyncIterator[Event]:
        state = run.state
        plan = state.current_plan
        step_number = len(state.execution_history) + 1

        yield self._event(
            run,
            "step_start",
            step=step_number,
            tool=plan.tool,
            tool_kind=plan.tool_kind.value,
            service=plan.service_name,
            reasoning=plan.reasoning,
            expected_output=plan.expected_output,
        )
        yield self._event(run, "step_executing", step=step_number, tool=plan.tool, service=plan.service_name, args=plan.args)

        outcome = await self.executor.execute(plan, state, run.session)
        snapshot = plan.model_copy(update={"tool": outcome.tool, "args": outcome.args})

        formatted: str | None = None
        if outcome.success:
            yield self._event(
                run,
                "step_raw_result",
                step=step_number,
                tool=outcome.tool,
                result=outcome.result.to_payload(),
                notes=outcome.notes,
            )
            pending = ExecutionStep(step_number=step_number, plan=snapshot, result=outcome.result, success=True)
            formatted = ""
            async for event in self._format(run, pending):
                if event.name == "step_formatted_result":
                    formatted = event.payload["formatted"]
                yield event

        step = state.append_step(snapshot, outcome.success, outcome.result, outcome.error)
        self._spawn(self._recorder.record_step(run.session.task_id, step), f"step {step.step_number}")
        run.monitor.update(step, state.iteration_count)

        yield self._event(
            run,
            "step_complete",
            step=step.step_number,
            step_id=step.step_id,
            tool=step.plan.tool,
            service=step.plan.service_name,
            success=step.success,
            formatted=formatted,
            error=step.error,
        )

        if outcome.success:
            run.phase = Phase.OBSERVING
            return

        async for event in self._handle_failure(run, step, outcome):
            yield event

    async def _format(self, run: TaskRun, step: ExecutionStep) -> AsyncIterator[Event]:
        if step.plan.tool_kind is ToolKind.LLM:
            yield self._event(run, "step_formatted_result", step=step.step_number, formatted=step.result.as_text())
            return

        chunks: list[str] = []
        try:
            async for chunk in stream_formatted(self._llm, step, self._config):
                chunks.append(chunk)
                yield self._event(run, "step_result_chunk", step=step.step_number, chunk=chunk)
            formatted = "".join(chunks)
        except Exception as exc:
            logger.warning("Formatting step %d failed: %s", step.step_number, exc)
            formatted = format_fallback(step, self._config.result_preview_chars)
        yield self._event(run, "step_formatted_result", step=step.step_number, formatted=formatted)

    async def _handle_failure(self, run: TaskRun, step: ExecutionStep, outcome: ExecutionOutcome) -> AsyncIterator[Event]:
        record = record_failure(run.state, step.plan.tool, step.error or "unknown error", self._config)
        details = outcome.error_details
        name = "tool_connection_error" if details is not None and is_connection_error(details) else "step_error"
        yield self._event(
            run,
            name,
            step=step.step_number,
            tool=step.plan.tool,
            service=step.plan.service_name,
            error=step.error,
            details=details.model_dump() if details else None,
            strategy=record.strategy.value,
            attempt=record.attempt_count,
        )

        if record.strategy in (Strategy.SKIP, Strategy.MANUAL_INTERVENTION):
            run.abort(f"{step.plan.tool} failed ({record.strategy.value}): {step.error}")
        elif record.strategy is Strategy.ALTERNATIVE and record.attempt_count >= self._config.alternative_attempt_limit:
            run.abort(f"{step.plan.tool} failed {record.attempt_count} times with no working alternative: {step.error}")
        else:
            run.phase = Phase.PLANNING

    async def _observe(self, run: TaskRun) -> AsyncIterator[Event]:
        state = run.state
        observation = await self.observer.observe(state)
        if observation.is_complete:
            state.is_complete = True
            run.phase = Phase.COMPLETED
        else:
            if observation.next_objective:
                state.current_objective = observation.next_objective
            run.phase = Phase.PLANNING

        yield self._event(
            run,
            "observation_complete",
            step=len(state.execution_history),
            is_complete=observation.is_complete,
            reasoning=observation.reasoning,
            next_objective=observation.next_objective,
        )

    async def _finish(self, run: TaskRun) -> AsyncIterator[Event]:
        state = run.state
        chunks: list[str] = []
        try:
            async for chunk in stream_final_answer(self._llm, state, self._config):
                chunks.append(chunk)
                yield self._event(run, "final_result_chunk", chunk=chunk)
            run.final_answer = "".join(chunks)
        except Exception as exc:
            logger.warning("Final answer stream failed, using plain summary: %s", exc)
            run.final_answer = final_fallback(state, self._config.result_preview_chars)
            yield self._event(run, "final_result_chunk", chunk=run.final_answer)

        self._spawn(self._recorder.record_final(run.session.task_id, run.final_answer), "final result")
        run.session.turns.append(SessionTurn(goal=state.goal, answer=run.final_answer, success=run.success))

        yield self._event(
            run,
            "task_execution_complete",
            success=run.success,
            is_complete=state.is_complete,
            final_result=run.final_answer,
            abort_reason=run.abort_reason,
            iterations=state.iteration_count,
            errors=list(state.errors),
            steps=len(state.execution_history),
        )
