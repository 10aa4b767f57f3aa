# postprocess.py
# Result post-processing chain.
#
# A FollowUpRule fires one automatic call after a matching tool succeeds,
# e.g. publishing a draft right after it is created. The chain never fails
# the step: a missing identifier or a failed follow-up is reported inside
# the returned value.

import asyncio
import json
import logging
import re
from typing import Any

from pydantic import BaseModel, Field

from task_engine.adapters import ToolAdapter

logger = logging.getLogger(__name__)


class FollowUpRule(BaseModel):
    """Trigger a follow-up tool when `service` runs a tool whose name contains `tool_contains`."""

    service: str
    tool_contains: str
    follow_up_tool: str
    id_field: str = Field(..., description="Key carrying the identifier, in the result and the follow-up args.")
    id_patterns: list[str] = Field(
        default_factory=list,
        description="Free-text regexes tried in order; group 1 is the identifier.",
    )

    def matches(self, service: str | None, tool: str) -> bool:
        return service == self.service and self.tool_contains in tool


def default_follow_up_rules() -> list[FollowUpRule]:
    return [
        FollowUpRule(
            service="x-mcp",
            tool_contains="create_draft",
            follow_up_tool="publish_draft",
            id_field="draft_id",
            id_patterns=[
                r"draft[_-]?id[\"\s:]*([^\"\s,}]+)",
                r"created\s+with\s+id\s+([a-zA-Z0-9_.-]+\.json)",
                r"with\s+id\s+([a-zA-Z0-9_.-]+\.json)",
                r"id[:\s]+([a-zA-Z0-9_.-]+\.json)",
                r"([a-zA-Z0-9_.-]*draft[a-zA-Z0-9_.-]*\.json)",
            ],
        )
    ]


# ---------------------------------------------------------------------------
# Identifier extraction
# ---------------------------------------------------------------------------


def _from_text(text: str, id_field: str, patterns: list[str]) -> str | None:
    generic = re.escape(id_field).replace("_", "[_-]?") + r"[\"'\s:=]*([^\"'\s,}]+)"
    for pattern in [generic, *patterns]:
        match = re.search(pattern, text, re.IGNORECASE)
        if match:
            return match.group(1)
    return None


def _from_value(value: Any, id_field: str, patterns: list[str], depth: int = 0) -> str | None:
    if depth > 4 or value is None:
        return None

    if isinstance(value, dict):
        found = value.get(id_field)
        if isinstance(found, (str, int)) and str(found):
            return str(found)
        content = value.get("content")
        if isinstance(content, list):
            return _from_value(content, id_field, patterns, depth + 1)
        return None

    if isinstance(value, list):
        for item in value:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                found = _from_value(item["text"], id_field, patterns, depth + 1)
            else:
                found = _from_value(item, id_field, patterns, depth + 1)
            if found:
                return found
        return None

    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return _from_text(value, id_field, patterns)
        if isinstance(parsed, (dict, list)):
            found = _from_value(parsed, id_field, patterns, depth + 1)
            if found:
                return found
        return _from_text(value, id_field, patterns)

    return None


def extract_identifier(raw: Any, rule: FollowUpRule) -> str | None:
    """
    Find the rule's identifier in a result of any shape.

    Tried in order: a typed field, MCP content text (itself possibly JSON
    or a JSON array of {text} items), a JSON string, and the free-text
    patterns.
    """
    return _from_value(raw, rule.id_field, rule.id_patterns)


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------


async def apply_follow_ups(
    rules: list[FollowUpRule],
    adapter: ToolAdapter,
    service: str | None,
    tool: str,
    raw: Any,
    principal: str,
    notes: list[str],
    timeout_s: float | None = None,
) -> Any:
    """
    Run at most one matching follow-up and return the (possibly merged) result.

    The follow-up call is bounded by timeout_s; a timeout is reported like
    any other follow-up failure.
    """
    rule = next((r for r in rules if r.matches(service, tool)), None)
    if rule is None:
        return raw

    identifier = extract_identifier(raw, rule)
    if identifier is None:
        message = f"{tool} succeeded but no {rule.id_field} was found; {rule.follow_up_tool} was not called."
        logger.warning(message)
        notes.append(message)
        return raw

    logger.info("Running follow-up %s with %s=%s", rule.follow_up_tool, rule.id_field, identifier)
    try:
        follow_up = await asyncio.wait_for(
            adapter.invoke(service, rule.follow_up_tool, {rule.id_field: identifier}, principal),
            timeout=timeout_s,
        )
    except Exception as exc:
        if isinstance(exc, asyncio.TimeoutError):
            error = f"ETIMEDOUT: {rule.follow_up_tool} on {service} exceeded {timeout_s}s"
        else:
            error = str(exc)
        logger.warning("Follow-up %s failed: %s", rule.follow_up_tool, error)
        return {
            "primary": raw,
            "follow_up_error": error,
            "summary": f"{tool} succeeded but {rule.follow_up_tool} failed; it may need to be run manually.",
            "completed": False,
        }

    return {
        "primary": raw,
        "follow_up": follow_up,
        "summary": f"{tool} and {rule.follow_up_tool} both succeeded ({rule.id_field}: {identifier}).",
        rule.id_field: identifier,
        "completed": True,
    }
