import asyncio
import json

import pytest

from fakes import FakeToolAdapter, ScriptedLLM, schema
from task_engine.adapters import ToolSpec
from task_engine.config import EngineConfig
from task_engine.errors import ExternalToolError, ToolNotFoundError
from task_engine.executor import Executor, camel_to_snake, normalize_keys
from task_engine.models import ExecutionPlan, TaskSession, ToolKind, WorkflowState
from task_engine.results import StructuredResult, TextResult

PRICE = ToolSpec(name="get_price", description="Price of a coin", parameter_schema=schema("coin_id", "vs_currency"))
TWEET = ToolSpec(name="sendTweet", description="Post a tweet", parameter_schema=schema("text"))
SEARCH = ToolSpec(name="search_coins", description="Search coins", parameter_schema=schema("query"))


def _executor(llm=None, adapter=None, config=None) -> Executor:
    adapter = adapter or FakeToolAdapter({"coingecko": [PRICE, SEARCH], "twitter": [TWEET]})
    return Executor(llm or ScriptedLLM(), adapter, config or EngineConfig())


def _external(tool: str, service: str, **args) -> ExecutionPlan:
    return ExecutionPlan(tool=tool, tool_kind=ToolKind.EXTERNAL, service_name=service, args=args)


# ---------------------------------------------------------------------------
# Key casing
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "name, expected",
    [("coinId", "coin_id"), ("vsCurrency", "vs_currency"), ("already_snake", "already_snake"), ("userID2", "user_id2")],
)
def test_camel_to_snake(name, expected):
    assert camel_to_snake(name) == expected


def test_normalize_keys_maps_to_declared_properties():
    args = {"coinId": "bitcoin", "VS_CURRENCY": "usd", "extra": 1}
    assert normalize_keys(args, ["coin_id", "vs_currency"]) == {"coin_id": "bitcoin", "vs_currency": "usd", "extra": 1}


def test_normalize_keys_maps_snake_back_to_camel_schema():
    assert normalize_keys({"user_name": "a"}, ["userName"]) == {"userName": "a"}


def test_normalize_keys_without_schema_is_a_copy():
    args = {"coinId": "bitcoin"}
    result = normalize_keys(args, [])
    assert result == args and result is not args


# ---------------------------------------------------------------------------
# Tool resolution
# ---------------------------------------------------------------------------


def test_exact_match_skips_the_model():
    llm = ScriptedLLM()
    spec, _ = asyncio.run(_executor(llm).resolve_tool("coingecko", "get_price", [PRICE, SEARCH], {}))
    assert spec is PRICE
    assert llm.calls == []


def test_fuzzy_match_is_case_insensitive_both_ways():
    executor = _executor()
    spec, _ = asyncio.run(executor.resolve_tool("coingecko", "GET_PRICE_NOW", [PRICE, SEARCH], {}))
    assert spec is PRICE
    spec, _ = asyncio.run(executor.resolve_tool("coingecko", "Search", [PRICE, SEARCH], {}))
    assert spec is SEARCH


def test_model_reselection_accepts_catalog_tool_and_its_params():
    llm = ScriptedLLM(reselect=[{"toolName": "search_coins", "inputParams": {"query": "btc"}, "reasoning": "closest"}])
    spec, args = asyncio.run(_executor(llm).resolve_tool("coingecko", "lookupAsset", [PRICE, SEARCH], {"symbol": "btc"}))
    assert spec is SEARCH
    assert args == {"query": "btc"}
    assert "lookupAsset" in llm.prompts("reselect")[0]


def test_model_reselection_of_unknown_tool_fails():
    llm = ScriptedLLM(reselect=[{"toolName": "made_up"}])
    with pytest.raises(ToolNotFoundError, match="made_up"):
        asyncio.run(_executor(llm).resolve_tool("coingecko", "lookupAsset", [PRICE], {}))


def test_unparseable_reselection_fails():
    llm = ScriptedLLM(reselect=["no idea"])
    with pytest.raises(ToolNotFoundError):
        asyncio.run(_executor(llm).resolve_tool("coingecko", "lookupAsset", [PRICE], {}))


def test_empty_tool_name_goes_straight_to_reselection():
    llm = ScriptedLLM(reselect=[{"toolName": "get_price"}])
    spec, _ = asyncio.run(_executor(llm).resolve_tool("coingecko", "", [PRICE, SEARCH], {}))
    assert spec is PRICE
    assert len(llm.prompts("reselect")) == 1


# ---------------------------------------------------------------------------
# Parameter adaptation
# ---------------------------------------------------------------------------


def test_adaptation_uses_previous_result_and_fixes_casing():
    state = WorkflowState(goal="tweet the price")
    state.append_step(_external("get_price", "coingecko"), True, StructuredResult(value={"bitcoin": {"usd": 65000}}))
    llm = ScriptedLLM(adapt=[{"toolName": "sendTweet", "inputParams": {"Text": "BTC is $65,000"}}])

    args = asyncio.run(_executor(llm).adapt_parameters(TWEET, {"message": "<price>"}, state))

    assert args == {"text": "BTC is $65,000"}
    prompt = llm.prompts("adapt")[0]
    assert "65000" in prompt
    assert "280" in prompt


def test_adaptation_falls_back_to_normalized_args():
    llm = ScriptedLLM(adapt=["sorry, cannot help"])
    args = asyncio.run(_executor(llm).adapt_parameters(PRICE, {"coinId": "bitcoin"}, WorkflowState(goal="g")))
    assert args == {"coin_id": "bitcoin"}


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def test_external_execution_invokes_resolved_tool():
    adapter = FakeToolAdapter({"coingecko": [PRICE]}, {("coingecko", "get_price"): {"bitcoin": {"usd": 65000}}})
    outcome = asyncio.run(
        _executor(adapter=adapter).execute(_external("getPrice", "coingecko", coinId="bitcoin"), WorkflowState(goal="g"))
    )
    assert outcome.success
    assert outcome.tool == "get_price"
    assert adapter.calls == [("coingecko", "get_price", {"coin_id": "bitcoin"})]
    assert isinstance(outcome.result, StructuredResult)


def test_service_alias_is_resolved_before_lookup():
    adapter = FakeToolAdapter({"twitter-client-mcp": [TWEET]})
    config = EngineConfig(service_aliases={"twitter": "twitter-client-mcp"})
    outcome = asyncio.run(
        _executor(adapter=adapter, config=config).execute(_external("sendTweet", "twitter", text="hi"), WorkflowState(goal="g"))
    )
    assert outcome.success
    assert outcome.service == "twitter-client-mcp"


def test_tool_errors_are_absorbed_with_details():
    adapter = FakeToolAdapter(
        {"twitter": [TWEET]},
        {("twitter", "sendTweet"): ExternalToolError("403 Forbidden", service="twitter")},
    )
    outcome = asyncio.run(_executor(adapter=adapter).execute(_external("sendTweet", "twitter"), WorkflowState(goal="g")))
    assert not outcome.success
    assert outcome.error == "403 Forbidden"
    assert outcome.error_details.kind == "authentication"


def test_unknown_service_fails_as_connection_error():
    outcome = asyncio.run(_executor().execute(_external("x", "nowhere-mcp"), WorkflowState(goal="g")))
    assert not outcome.success
    assert "Not connected" in outcome.error
    assert outcome.error_details.kind == "connection"


def test_unresolvable_tool_fails_the_step():
    llm = ScriptedLLM(reselect=[{"toolName": "nope"}])
    outcome = asyncio.run(_executor(llm).execute(_external("teleport", "twitter"), WorkflowState(goal="g")))
    assert not outcome.success
    assert "teleport" in outcome.error


def test_slow_tool_times_out():
    async def slow(*_):
        await asyncio.sleep(1)

    adapter = FakeToolAdapter({"coingecko": [PRICE]})
    adapter.invoke = slow
    config = EngineConfig(tool_timeout_s=0.01)
    outcome = asyncio.run(_executor(adapter=adapter, config=config).execute(_external("get_price", "coingecko"), WorkflowState(goal="g")))
    assert not outcome.success
    assert outcome.error.startswith("ETIMEDOUT")


def test_unexpected_exceptions_are_absorbed():
    adapter = FakeToolAdapter({"coingecko": [PRICE]}, {("coingecko", "get_price"): ZeroDivisionError("bad math")})
    outcome = asyncio.run(_executor(adapter=adapter).execute(_external("get_price", "coingecko"), WorkflowState(goal="g")))
    assert not outcome.success
    assert outcome.error == "ZeroDivisionError: bad math"


def test_llm_capability_runs_a_single_completion():
    llm = ScriptedLLM(execute=["Bitcoin is up 5% today."])
    state = WorkflowState(goal="analyze")
    state.append_step(_external("get_price", "coingecko"), True, TextResult(text="BTC 65000 (+5%)"))
    plan = ExecutionPlan(tool="analyze", args={"focus": "trend"})

    outcome = asyncio.run(_executor(llm).execute(plan, state))

    assert outcome.success
    assert outcome.result.as_text() == "Bitcoin is up 5% today."
    prompt = llm.prompts("execute")[0]
    assert "BTC 65000 (+5%)" in prompt
    assert json.dumps("trend") in prompt


def test_completion_claim_succeeds_without_calls():
    llm = ScriptedLLM()
    plan = ExecutionPlan(tool="task_complete", reasoning="price was tweeted")
    outcome = asyncio.run(_executor(llm).execute(plan, WorkflowState(goal="g")))
    assert outcome.success
    assert "price was tweeted" in outcome.result.as_text()
    assert llm.calls == []


def test_follow_up_runs_after_draft_creation():
    draft = ToolSpec(name="create_draft_tweet", parameter_schema=schema("content"))
    publish = ToolSpec(name="publish_draft", parameter_schema=schema("draft_id"))
    adapter = FakeToolAdapter(
        {"x-mcp": [draft, publish]},
        {
            ("x-mcp", "create_draft_tweet"): {"content": [{"type": "text", "text": "Draft created with ID thread_draft_42.json"}]},
            ("x-mcp", "publish_draft"): {"published": True},
        },
    )
    session = TaskSession(principal="user-1")
    outcome = asyncio.run(
        _executor(adapter=adapter).execute(_external("create_draft_tweet", "x-mcp", content="gm"), WorkflowState(goal="g"), session)
    )
    assert outcome.success
    assert adapter.calls[-1] == ("x-mcp", "publish_draft", {"draft_id": "thread_draft_42.json"})
    assert outcome.result.value["completed"] is True


def test_follow_up_is_bounded_by_tool_timeout():
    draft = ToolSpec(name="create_draft_tweet", parameter_schema=schema("content"))
    adapter = FakeToolAdapter(
        {"x-mcp": [draft]},
        {
            ("x-mcp", "create_draft_tweet"): {"draft_id": "d1.json"},
            ("x-mcp", "publish_draft"): lambda args: asyncio.sleep(3600),
        },
    )
    executor = _executor(adapter=adapter, config=EngineConfig(tool_timeout_s=0.1))
    outcome = asyncio.run(
        asyncio.wait_for(executor.execute(_external("create_draft_tweet", "x-mcp", content="gm"), WorkflowState(goal="g")), timeout=5)
    )
    assert outcome.success
    assert outcome.result.value["completed"] is False
    assert "ETIMEDOUT" in outcome.result.value["follow_up_error"]
    assert outcome.result.value["primary"] == {"draft_id": "d1.json"}
