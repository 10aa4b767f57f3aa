# results.py
# Tagged result variant for tool and model outputs.
#
# Tool results arrive in arbitrary shapes. Downstream code reads them only
# through these accessors, never by assuming a dict or a string.

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

_DATA_KEYS = ("data", "result", "results", "items", "content", "value", "price", "amount")


def _truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit] + "…"
    return text


def _dumps(value: Any) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def _mcp_text(value: Any) -> str | None:
    """Join the text parts of an MCP-style {"content": [{"type": "text", "text": ...}]} payload."""
    if not isinstance(value, dict):
        return None
    content = value.get("content")
    if not isinstance(content, list):
        return None
    parts = [
        item["text"]
        for item in content
        if isinstance(item, dict) and isinstance(item.get("text"), str)
    ]
    return "\n".join(parts) if parts else None


class TextResult(BaseModel):
    """Plain text produced by a model capability or a text-only tool."""

    kind: Literal["text"] = "text"
    text: str

    def as_text(self) -> str:
        return self.text

    def preview(self, limit: int = 300) -> str:
        return _truncate(self.text, limit)

    def data_content(self, limit: int = 2000) -> str:
        return _truncate(self.text, limit)

    def to_payload(self) -> Any:
        return self.text


class StructuredResult(BaseModel):
    """An opaque structured value returned by an external tool."""

    kind: Literal["structured"] = "structured"
    value: Any = None

    def as_text(self) -> str:
        text = _mcp_text(self.value)
        if text is not None:
            return text
        return _dumps(self.value)

    def preview(self, limit: int = 300) -> str:
        return _truncate(self.as_text(), limit)

    def data_content(self, limit: int = 2000) -> str:
        """
        The core data of the result, stripped of envelope fields.

        Prefers MCP text content, then the first well-known data key,
        then the whole value.
        """
        text = _mcp_text(self.value)
        if text is not None:
            return _truncate(text, limit)
        if isinstance(self.value, dict):
            for key in _DATA_KEYS:
                if key in self.value and self.value[key] not in (None, "", [], {}):
                    inner = self.value[key]
                    return _truncate(inner if isinstance(inner, str) else _dumps(inner), limit)
        return _truncate(_dumps(self.value), limit)

    def to_payload(self) -> Any:
        return self.value


ToolResult = Annotated[Union[TextResult, StructuredResult], Field(discriminator="kind")]


def to_result(raw: Any) -> TextResult | StructuredResult:
    """Wrap an arbitrary tool or model output in the result variant."""
    if isinstance(raw, (TextResult, StructuredResult)):
        return raw
    if isinstance(raw, str):
        return TextResult(text=raw)
    return StructuredResult(value=raw)
