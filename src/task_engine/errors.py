# errors.py
# Exception taxonomy for the task engine.
#
# Only two conditions end a run early: the continuation predicate in
# monitor.py, and a skip / manual_intervention strategy from failures.py.
# Everything raised here is absorbed by the component that owns it.


class TaskEngineError(Exception):
    """Base class for every error raised by the engine."""


class ConfigError(TaskEngineError):
    """Raised when environment configuration cannot be parsed or validated."""


class PlanningError(TaskEngineError):
    """Raised when the planner's model call fails. Absorbed via the fallback plan."""


class ToolNotFoundError(TaskEngineError):
    """Raised when no catalog tool can be matched to the requested name."""

    def __init__(self, message: str, service: str | None = None, tool: str | None = None) -> None:
        super().__init__(message)
        self.service = service
        self.tool = tool


class ExternalToolError(TaskEngineError):
    """Raised when an external tool invocation fails or times out."""

    def __init__(self, message: str, service: str | None = None, tool: str | None = None) -> None:
        super().__init__(message)
        self.service = service
        self.tool = tool


class ExtractionError(TaskEngineError):
    """Raised when no JSON value can be recovered from model output."""


class ObservationError(TaskEngineError):
    """Raised when the observer's model call fails. The loop defaults to continue."""
