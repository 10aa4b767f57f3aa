# monitor.py
# Progress monitor and continuation predicate.
#
# ProgressMonitor.update runs once per committed step; stop_reason runs
# before every planning transition and returns why the loop must stop.

from pydantic import BaseModel, Field

from task_engine.config import EngineConfig
from task_engine.models import ExecutionStep


class ProgressMonitor(BaseModel):
    last_progress_step: int = 0
    consecutive_failures: int = 0
    stagnation_count: int = 0
    repeated_actions: dict[str, int] = Field(default_factory=dict)

    def update(self, step: ExecutionStep, iteration: int) -> None:
        if step.success:
            self.consecutive_failures = 0
            self.last_progress_step = iteration
        else:
            self.consecutive_failures += 1

        self.stagnation_count = iteration - self.last_progress_step

        key = step.plan.action_key
        self.repeated_actions[key] = self.repeated_actions.get(key, 0) + 1

    def stop_reason(self, iteration: int, config: EngineConfig) -> str | None:
        """Return a reason when the loop must not plan again, else None."""
        if iteration >= config.max_iterations:
            return f"Reached maximum iterations ({config.max_iterations})."
        if self.consecutive_failures >= config.consecutive_failure_limit:
            return f"Too many consecutive failures ({self.consecutive_failures})."
        if self.stagnation_count >= config.stagnation_limit:
            return f"No progress for {self.stagnation_count} iterations."
        for action, count in self.repeated_actions.items():
            if count >= config.repeated_action_limit:
                return f"Action {action} repeated {count} times."
        return None
