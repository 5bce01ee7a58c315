import pytest

from models import BatchState
from scripts.run_batch import build_parser, load_plan, main, run
from services.batch_orchestrator import BatchOrchestrator, policy_decider
from fakes import FakeWritingService


def test_load_plan_reads_mapping(tmp_path):
    plan_file = tmp_path / "plan.yaml"
    plan_file.write_text("start_unit: 5\ntotal_cycles: 3\nmodel: writer-large\n", encoding="utf-8")
    assert load_plan(str(plan_file)) == {"start_unit": 5, "total_cycles": 3, "model": "writer-large"}


def test_load_plan_without_path():
    assert load_plan(None) == {}


def test_load_plan_rejects_lists(tmp_path):
    plan_file = tmp_path / "plan.yaml"
    plan_file.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_plan(str(plan_file))


def test_parser_defaults_to_continue():
    args = build_parser().parse_args(["--start", "3"])
    assert args.start == 3
    assert args.count is None
    assert args.policy == "continue"


def test_main_requires_start(capsys):
    assert main([]) == 2
    assert "--start" in capsys.readouterr().out


def test_main_rejects_non_positive_count(capsys):
    assert main(["--start", "1", "--count", "0"]) == 2


@pytest.mark.asyncio
async def test_run_executes_whole_batch():
    service = FakeWritingService()
    orchestrator = BatchOrchestrator(
        service.stream,
        service.create_next_unit,
        service.is_unit_ready,
        policy_decider("continue"),
        poll_interval_s=0.001,
        grace_period_s=0.0,
    )
    snapshot = await run(orchestrator, 2, 3)
    assert snapshot.state == BatchState.COMPLETED
    assert snapshot.succeeded == [3, 4]
