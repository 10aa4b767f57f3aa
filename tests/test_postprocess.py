import asyncio
import json

import pytest

from fakes import FakeToolAdapter
from task_engine.errors import ExternalToolError
from task_engine.postprocess import FollowUpRule, apply_follow_ups, default_follow_up_rules, extract_identifier

RULE = default_follow_up_rules()[0]

# ---------------------------------------------------------------------------
# Identifier extraction
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw",
    [
        {"draft_id": "d-1"},
        {"content": [{"type": "text", "text": json.dumps({"draft_id": "d-1"})}]},
        {"content": [{"type": "text", "text": json.dumps([{"type": "text", "text": "draft_id: d-1"}])}]},
        json.dumps({"draft_id": "d-1"}),
        'Saved. draft_id: "d-1"',
    ],
)
def test_identifier_found_in_any_shape(raw):
    assert extract_identifier(raw, RULE) == "d-1"


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Draft created with ID thread_draft_99.json", "thread_draft_99.json"),
        ("Tweet saved, ID: tweet_7.json", "tweet_7.json"),
        ("stored as my_draft_note.json", "my_draft_note.json"),
    ],
)
def test_identifier_free_text_patterns(text, expected):
    assert extract_identifier(text, RULE) == expected


def test_no_identifier():
    assert extract_identifier({"content": [{"type": "text", "text": "All good"}]}, RULE) is None
    assert extract_identifier(None, RULE) is None


def test_custom_rule_uses_its_own_field():
    rule = FollowUpRule(service="github-mcp", tool_contains="create_pr", follow_up_tool="merge_pr", id_field="pr_number")
    assert extract_identifier({"pr_number": 12}, rule) == "12"
    assert extract_identifier("Opened pr-number: 12", rule) == "12"


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------


def _apply(adapter, tool="create_draft_tweet", service="x-mcp", raw=None):
    notes: list[str] = []
    result = asyncio.run(
        apply_follow_ups([RULE], adapter, service, tool, raw if raw is not None else {"draft_id": "d-1"}, "u", notes)
    )
    return result, notes


def test_non_matching_tools_pass_through():
    adapter = FakeToolAdapter({})
    result, notes = _apply(adapter, tool="get_timeline")
    assert result == {"draft_id": "d-1"}
    assert adapter.calls == []
    result, _ = _apply(adapter, service="twitter-client-mcp")
    assert adapter.calls == []


def test_successful_follow_up_merges_results():
    adapter = FakeToolAdapter({}, {("x-mcp", "publish_draft"): {"url": "https://x.com/1"}})
    result, notes = _apply(adapter)
    assert result["primary"] == {"draft_id": "d-1"}
    assert result["follow_up"] == {"url": "https://x.com/1"}
    assert result["draft_id"] == "d-1"
    assert result["completed"] is True
    assert notes == []


def test_failed_follow_up_keeps_primary_result():
    adapter = FakeToolAdapter({}, {("x-mcp", "publish_draft"): ExternalToolError("rate limit")})
    result, _ = _apply(adapter)
    assert result["primary"] == {"draft_id": "d-1"}
    assert result["follow_up_error"] == "rate limit"
    assert result["completed"] is False


def test_missing_identifier_returns_original_with_note():
    adapter = FakeToolAdapter({})
    raw = {"content": [{"type": "text", "text": "Draft saved"}]}
    result, notes = _apply(adapter, raw=raw)
    assert result is raw
    assert adapter.calls == []
    assert "draft_id" in notes[0]


def test_hanging_follow_up_times_out():
    adapter = FakeToolAdapter({}, {("x-mcp", "publish_draft"): lambda args: asyncio.sleep(3600)})
    notes: list[str] = []
    result = asyncio.run(
        asyncio.wait_for(
            apply_follow_ups([RULE], adapter, "x-mcp", "create_draft_tweet", {"draft_id": "d-1"}, "u", notes, timeout_s=0.05),
            timeout=5,
        )
    )
    assert result["completed"] is False
    assert result["follow_up_error"].startswith("ETIMEDOUT: publish_draft on x-mcp")
