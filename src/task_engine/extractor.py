# extractor.py
# Best-effort recovery of a JSON value from free-form model output.
#
# Model text is treated like an untrusted network message: fences are
# stripped, the first balanced region is located with a string-aware depth
# counter, one repair pass is applied, and the result is parsed once.

import json
import logging
import re
from typing import Any

from task_engine.errors import ExtractionError

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"```[a-zA-Z0-9_-]*[ \t]*\n?(.*?)```", re.DOTALL)
_OPENERS = {"{": "}", "[": "]"}
_PY_LITERALS = {"True": "true", "False": "false", "None": "null"}


def strip_fences(text: str) -> str:
    """Return the body of the first fenced code block, or the text unchanged."""
    match = _FENCE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def find_json_region(text: str) -> str | None:
    """
    Return the first balanced {...} region, or the first [...] region when
    the text contains no '{'. Quotes and escapes inside strings are honoured,
    so braces within string literals do not affect depth.
    """
    start = text.find("{")
    if start == -1:
        start = text.find("[")
    if start == -1:
        return None

    depth = 0
    quote: str | None = None
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if quote:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == quote:
                quote = None
            continue
        if char in ('"', "'"):
            quote = char
        elif char in _OPENERS:
            depth += 1
        elif char in ("}", "]"):
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


# ---------------------------------------------------------------------------
# Repair
# ---------------------------------------------------------------------------


def _read_string(text: str, start: int) -> tuple[str, int]:
    """Read a quoted string starting at text[start]; return it re-encoded with double quotes."""
    quote = text[start]
    chars: list[str] = []
    index = start + 1
    while index < len(text):
        char = text[index]
        if char == "\\" and index + 1 < len(text):
            nxt = text[index + 1]
            # \' is not a valid JSON escape
            chars.append("'" if nxt == "'" else "\\" + nxt)
            index += 2
            continue
        if char == quote:
            return '"' + "".join(chars) + '"', index + 1
        if char == '"':
            chars.append('\\"')
        else:
            chars.append(char)
        index += 1
    return '"' + "".join(chars) + '"', index


def _skip_blank(text: str, index: int) -> int:
    while index < len(text):
        if text[index].isspace():
            index += 1
        elif text.startswith("//", index):
            newline = text.find("\n", index)
            index = len(text) if newline == -1 else newline + 1
        elif text.startswith("/*", index):
            end = text.find("*/", index + 2)
            index = len(text) if end == -1 else end + 2
        else:
            break
    return index


def repair_json(text: str) -> str:
    """
    One string-aware repair pass over a JSON-ish region.

    Strips // and /* */ comments, drops trailing commas, quotes bare keys,
    converts single-quoted strings to double-quoted ones and maps Python
    literals to JSON. Valid JSON passes through unchanged.
    """
    out: list[str] = []
    index = 0
    while index < len(text):
        char = text[index]

        if char in ('"', "'"):
            literal, index = _read_string(text, index)
            out.append(literal)
            continue

        if text.startswith("//", index) or text.startswith("/*", index):
            index = _skip_blank(text, index)
            continue

        if char == ",":
            nxt = _skip_blank(text, index + 1)
            if nxt < len(text) and text[nxt] in "}]":
                index = nxt
                continue
            out.append(char)
            index += 1
            continue

        if char.isalpha() or char in "_$":
            end = index
            while end < len(text) and (text[end].isalnum() or text[end] in "_$"):
                end += 1
            word = text[index:end]
            after = _skip_blank(text, end)
            if after < len(text) and text[after] == ":":
                out.append(json.dumps(word))
            else:
                out.append(_PY_LITERALS.get(word, word))
            index = end
            continue

        out.append(char)
        index += 1
    return "".join(out)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def extract_json(text: str | None) -> Any:
    """
    Recover the first JSON object (or array) embedded in model output.

    Raises ExtractionError when no region is found or the repaired region
    still does not parse. Exactly one parse attempt is made.
    """
    if not text or not text.strip():
        raise ExtractionError("Model returned an empty response.")

    body = strip_fences(text)
    region = find_json_region(body)
    if region is None and body != text:
        region = find_json_region(text)
    if region is None:
        raise ExtractionError(f"No JSON object found in model output: {text[:200]!r}")

    repaired = repair_json(region)
    try:
        return json.loads(repaired, strict=False)
    except json.JSONDecodeError as exc:
        logger.debug("Repaired JSON still invalid: %s", repaired[:500])
        raise ExtractionError(f"Model output is not valid JSON: {exc}") from exc
