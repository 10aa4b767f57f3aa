# failures.py
# Failure classification.
#
# classify_failure maps an error message and attempt count to a handling
# strategy. describe_error maps the same message to caller-facing details
# (kind, retryability, remediation) carried on error events. Both are
# keyword heuristics, not semantic classifiers.

import logging
import re
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from task_engine.config import EngineConfig
from task_engine.models import FailureRecord, Strategy, WorkflowState

logger = logging.getLogger(__name__)


def _pattern(*words: str) -> re.Pattern:
    return re.compile("|".join(words), re.IGNORECASE)


# ---------------------------------------------------------------------------
# Strategy rules (applied in order)
# ---------------------------------------------------------------------------

_ENVIRONMENT = _pattern(
    r"require is not defined",
    r"cannot find module",
    r"no module named",
    r"module not found",
    r"cannot resolve",
    r"importerror",
    r"\b401\b",
    r"\b403\b",
    r"unauthori[sz]ed",
    r"forbidden",
    r"permission denied",
    r"authentication",
)
_PAYLOAD = _pattern(r"\b280\b", r"character", r"too long", r"payload too large", r"\b413\b")
_CONNECTION = _pattern(
    r"not connected",
    r"connection closed",
    r"connection failed",
    r"connection refused",
    r"econnrefused",
)
_TRANSIENT = _pattern(
    r"\b50[0234]\b",
    r"timeout",
    r"timed ?out",
    r"network",
    r"rate limit",
)


def classify_failure(
    error: str,
    attempt_count: int,
    max_retries: int = 2,
    skip_threshold: int = 5,
) -> Strategy:
    if _ENVIRONMENT.search(error):
        return Strategy.MANUAL_INTERVENTION
    if _PAYLOAD.search(error):
        return Strategy.ALTERNATIVE
    if _CONNECTION.search(error):
        return Strategy.SKIP
    if _TRANSIENT.search(error):
        return Strategy.RETRY if attempt_count < max_retries else Strategy.SKIP
    if attempt_count < max_retries:
        return Strategy.RETRY
    if attempt_count < skip_threshold:
        return Strategy.ALTERNATIVE
    return Strategy.SKIP


def record_failure(state: WorkflowState, tool: str, error: str, config: EngineConfig) -> FailureRecord:
    """Create or bump the tool's FailureRecord and reclassify its strategy."""
    record = state.failure_history.get(tool)
    if record is None:
        record = FailureRecord(tool=tool, last_error=error, max_retries=config.per_tool_max_retries)
        state.failure_history[tool] = record
    else:
        record.attempt_count += 1
        record.last_error = error
        record.last_attempt_time = datetime.now(timezone.utc)

    record.strategy = classify_failure(
        error,
        record.attempt_count,
        max_retries=record.max_retries,
        skip_threshold=config.escalation_skip_threshold,
    )
    logger.info(
        "Failure #%d for %s classified as %s: %s",
        record.attempt_count, tool, record.strategy.value, error[:200],
    )
    return record


# ---------------------------------------------------------------------------
# Caller-facing error details
# ---------------------------------------------------------------------------


class ErrorDetails(BaseModel):
    """Structured description of an error, for callers that want to act on it."""

    kind: str = Field(..., description="authentication | connection | configuration | server | unknown")
    title: str
    message: str
    retryable: bool = False
    requires_user_action: bool = False
    service: str | None = None
    suggestions: list[str] = Field(default_factory=list)


_AUTH = _pattern(
    r"\b401\b", r"\b403\b", r"unauthori[sz]ed", r"forbidden",
    r"authentication", r"invalid token", r"api key", r"permission denied",
)
_CONNECTIVITY = _pattern(
    r"timeout", r"timed ?out", r"econnrefused", r"connection refused",
    r"not connected", r"connection closed", r"connection failed", r"network",
)
_CONFIGURATION = _pattern(r"not configured", r"missing required", r"invalid configuration")
_SERVER = _pattern(r"\b50[0234]\b", r"rate limit", r"quota", r"internal server error")


def describe_error(message: str, service: str | None = None) -> ErrorDetails:
    target = service or "the service"
    if _AUTH.search(message):
        return ErrorDetails(
            kind="authentication",
            title=f"Authentication failed for {target}",
            message=message,
            requires_user_action=True,
            service=service,
            suggestions=[
                "Check that the credentials for this service are present and valid.",
                "Confirm the account has permission for the requested operation.",
            ],
        )
    if _CONNECTIVITY.search(message):
        return ErrorDetails(
            kind="connection",
            title=f"Could not reach {target}",
            message=message,
            retryable=True,
            service=service,
            suggestions=[
                "Check that the service is running and reachable.",
                "Retry once the connection is restored.",
            ],
        )
    if _CONFIGURATION.search(message):
        return ErrorDetails(
            kind="configuration",
            title=f"{target} is not configured correctly",
            message=message,
            requires_user_action=True,
            service=service,
            suggestions=["Review the service configuration and required parameters."],
        )
    if _SERVER.search(message):
        return ErrorDetails(
            kind="server",
            title=f"{target} reported a server error",
            message=message,
            retryable=True,
            service=service,
            suggestions=["Wait a moment and retry.", "Check the service's rate limits or quota."],
        )
    return ErrorDetails(kind="unknown", title="Step failed", message=message, service=service)


def is_connection_error(details: ErrorDetails) -> bool:
    return details.service is not None and details.kind in ("authentication", "connection")
