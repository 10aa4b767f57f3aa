import pytest
from pydantic import ValidationError

from task_engine.models import ExecutionPlan, ExecutionStep, TaskSession, ToolKind, WorkflowState
from task_engine.results import StructuredResult, TextResult, to_result

# ---------------------------------------------------------------------------
# Plans and state
# ---------------------------------------------------------------------------


def test_external_plan_requires_service():
    with pytest.raises(ValidationError, match="service_name"):
        ExecutionPlan(tool="get_price", tool_kind=ToolKind.EXTERNAL)


def test_llm_plan_drops_service():
    plan = ExecutionPlan(tool="summarize", tool_kind=ToolKind.LLM, service_name="github-mcp")
    assert plan.service_name is None
    assert plan.action_key == "llm:summarize"


def test_step_numbers_follow_history_length():
    state = WorkflowState(goal="g")
    plan = ExecutionPlan(tool="summarize")
    for expected, success in enumerate([True, False, True], start=1):
        step = state.append_step(plan, success, TextResult(text=str(expected)) if success else None)
        assert step.step_number == expected == len(state.execution_history)


def test_blackboard_tracks_last_successful_result():
    state = WorkflowState(goal="g")
    plan = ExecutionPlan(tool="summarize")
    state.append_step(plan, True, StructuredResult(value={"price": 1}))
    state.append_step(plan, False, error="boom")
    assert state.blackboard["lastResult"] == {"price": 1}
    assert state.blackboard["step1"] == {"price": 1}
    assert "step2" not in state.blackboard
    assert state.last_successful_step.step_number == 1


def test_step_result_round_trips_through_the_tagged_union():
    step = ExecutionStep(step_number=1, plan=ExecutionPlan(tool="t"), result=TextResult(text="hi"), success=True)
    restored = ExecutionStep.model_validate_json(step.model_dump_json())
    assert isinstance(restored.result, TextResult)


def test_session_recent_turns():
    session = TaskSession()
    assert session.recent_turns() == []
    assert session.task_id != TaskSession().task_id


# ---------------------------------------------------------------------------
# Result accessors
# ---------------------------------------------------------------------------


def test_to_result_picks_variant():
    assert isinstance(to_result("text"), TextResult)
    assert isinstance(to_result({"a": 1}), StructuredResult)
    assert isinstance(to_result([1, 2]), StructuredResult)


def test_mcp_content_text_is_preferred():
    result = StructuredResult(value={"content": [{"type": "text", "text": "BTC $65,000"}], "isError": False})
    assert result.as_text() == "BTC $65,000"
    assert result.data_content() == "BTC $65,000"


def test_data_content_uses_known_keys():
    assert StructuredResult(value={"status": "ok", "data": {"usd": 1}}).data_content() == '{"usd": 1}'
    assert StructuredResult(value={"status": "ok", "price": "42"}).data_content() == "42"


def test_data_content_truncates():
    result = TextResult(text="x" * 50)
    assert result.data_content(10) == "x" * 10 + "…"
