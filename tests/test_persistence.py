import asyncio
import json

from task_engine.models import ExecutionPlan, ExecutionStep, ToolKind
from task_engine.persistence import JsonlRecorder, NullRecorder
from task_engine.results import StructuredResult


def _step(n: int) -> ExecutionStep:
    plan = ExecutionPlan(tool="get_price", tool_kind=ToolKind.EXTERNAL, service_name="coingecko")
    return ExecutionStep(step_number=n, plan=plan, result=StructuredResult(value={"usd": 65000}), success=True)


def test_jsonl_recorder_appends_one_line_per_record(tmp_path):
    path = tmp_path / "runs" / "steps.jsonl"
    recorder = JsonlRecorder(path)

    async def scenario():
        await asyncio.gather(*(recorder.record_step("t1", _step(n)) for n in (1, 2, 3)))
        await recorder.record_final("t1", "Bitcoin is at $65,000")

    asyncio.run(scenario())

    lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert len(lines) == 4
    assert sorted(line["step"]["step_number"] for line in lines[:3]) == [1, 2, 3]
    assert lines[0]["step"]["result"] == {"kind": "structured", "value": {"usd": 65000}}
    assert lines[-1] == {"task_id": "t1", "type": "final", "summary": "Bitcoin is at $65,000"}


def test_null_recorder_accepts_everything():
    recorder = NullRecorder()

    async def scenario():
        await recorder.record_step("t1", _step(1))
        await recorder.record_final("t1", "done")

    asyncio.run(scenario())
