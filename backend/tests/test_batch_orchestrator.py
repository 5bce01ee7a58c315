"""
Tests for the batch orchestrator: full runs, per-cycle failure decisions,
cancellation bounds and the sequential one-session-at-a-time guarantee.
"""

import asyncio

import pytest

from core.errors import BatchStateError
from fakes import FakeWritingService
from models import BatchJob, BatchState, CycleFailure, FailureStage, SessionStatus
from services.batch_orchestrator import (
    BatchOrchestrator,
    InteractiveDecider,
    build_summary,
    policy_decider,
)


def make_orchestrator(service: FakeWritingService, decide=None, **overrides) -> BatchOrchestrator:
    options = {
        "persist": service.save_unit,
        "poll_interval_s": 0.001,
        "grace_period_s": 0.0,
        "unit_ready_timeout_s": 0.05,
    }
    options.update(overrides)
    return BatchOrchestrator(
        service.stream,
        service.create_next_unit,
        service.is_unit_ready,
        decide or policy_decider("continue"),
        **options,
    )


async def wait_for_pending_failure(orchestrator: BatchOrchestrator) -> CycleFailure:
    for _ in range(400):
        pending = orchestrator.snapshot().pending_failure
        if pending is not None:
            return pending
        await asyncio.sleep(0.005)
    raise AssertionError("no failure became pending")


async def wait_until(predicate, message: str) -> None:
    for _ in range(400):
        if predicate():
            return
        await asyncio.sleep(0.005)
    raise AssertionError(message)


class TestFullRuns:
    @pytest.mark.asyncio
    async def test_ten_cycles_from_unit_five(self):
        service = FakeWritingService()
        orchestrator = make_orchestrator(service)

        snapshot = await asyncio.wait_for(orchestrator.execute(10, 5), timeout=5)

        assert snapshot.state == BatchState.COMPLETED
        assert snapshot.succeeded == list(range(5, 15))
        assert snapshot.failed == []
        assert snapshot.current_index == 10
        assert snapshot.summary == "批量生成完成！已成功生成10章内容"
        assert service.streamed == list(range(5, 15))
        # No next unit is created after the last cycle.
        assert service.created == list(range(6, 15))
        assert service.saved[5] == "第5章的故事开始了。\n“走吧。”\n他说。"

    @pytest.mark.asyncio
    async def test_cycles_never_overlap(self):
        service = FakeWritingService()
        orchestrator = make_orchestrator(service)
        await asyncio.wait_for(orchestrator.execute(4, 1), timeout=5)
        assert service.max_active == 1

    @pytest.mark.asyncio
    async def test_session_listeners_follow_every_cycle(self):
        service = FakeWritingService()
        orchestrator = make_orchestrator(service)
        completed = []

        def on_snapshot(snapshot):
            if snapshot.status == SessionStatus.COMPLETE:
                completed.append(snapshot.unit_number)

        orchestrator.subscribe_sessions(on_snapshot)
        await asyncio.wait_for(orchestrator.execute(3, 1), timeout=5)
        assert completed == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_batch_listener_sees_state_changes(self):
        service = FakeWritingService()
        orchestrator = make_orchestrator(service)
        states = []
        orchestrator.subscribe(lambda snapshot: states.append(snapshot.state))
        await asyncio.wait_for(orchestrator.execute(2, 1), timeout=5)
        assert states[0] == BatchState.AWAITING_CONFIRMATION
        assert BatchState.AWAITING_UNIT_READY in states
        assert states[-1] == BatchState.COMPLETED


class TestCycleFailures:
    @pytest.mark.asyncio
    async def test_continue_after_failed_cycle(self):
        service = FakeWritingService(failing_units={8})
        orchestrator = make_orchestrator(service, policy_decider("continue"))

        snapshot = await asyncio.wait_for(orchestrator.execute(10, 5), timeout=5)

        assert snapshot.state == BatchState.COMPLETED
        assert snapshot.failed == [8]
        assert snapshot.succeeded == [5, 6, 7, 9, 10, 11, 12, 13, 14]
        assert snapshot.failures[0].cycle_index == 3
        assert snapshot.failures[0].stage == FailureStage.GENERATION
        assert snapshot.failures[0].message == "生成失败"
        assert 9 in service.created
        assert snapshot.summary == "批量生成完成，成功生成9章，失败1章（第8章）"

    @pytest.mark.asyncio
    async def test_abort_after_failed_cycle(self):
        service = FakeWritingService(failing_units={8})
        orchestrator = make_orchestrator(service, policy_decider("abort"))

        snapshot = await asyncio.wait_for(orchestrator.execute(10, 5), timeout=5)

        assert snapshot.state == BatchState.CANCELLED
        assert snapshot.cancelled is True
        assert snapshot.succeeded == [5, 6, 7]
        assert snapshot.failed == [8]
        assert snapshot.current_index == 4
        assert 9 not in service.created
        assert service.streamed == [5, 6, 7, 8]
        assert snapshot.summary == "批量生成已取消，已成功生成3章"

    @pytest.mark.asyncio
    async def test_unit_ready_timeout_is_a_cycle_failure(self):
        service = FakeWritingService(never_ready={6})
        orchestrator = make_orchestrator(service)

        snapshot = await asyncio.wait_for(orchestrator.execute(2, 5), timeout=5)

        assert snapshot.state == BatchState.COMPLETED
        assert snapshot.failed == [5]
        assert snapshot.succeeded == [6]
        failure = snapshot.failures[0]
        assert failure.stage == FailureStage.UNIT_READY
        assert failure.message == "等待第6章准备就绪超时"

    @pytest.mark.asyncio
    async def test_persist_failure(self):
        service = FakeWritingService(failing_saves={2})
        orchestrator = make_orchestrator(service)

        snapshot = await asyncio.wait_for(orchestrator.execute(3, 1), timeout=5)

        assert snapshot.failed == [2]
        assert snapshot.succeeded == [1, 3]
        assert snapshot.failures[0].stage == FailureStage.PERSIST

    @pytest.mark.asyncio
    async def test_unit_creation_failure_is_a_cycle_failure(self):
        service = FakeWritingService(failing_creates={3})
        orchestrator = make_orchestrator(service)

        snapshot = await asyncio.wait_for(orchestrator.execute(3, 1), timeout=5)

        assert snapshot.state == BatchState.COMPLETED
        assert snapshot.failed == [2]
        assert snapshot.succeeded == [1, 3]
        assert service.created == [2]
        assert service.streamed == [1, 2, 3]
        failure = snapshot.failures[0]
        assert failure.cycle_index == 1
        assert failure.stage == FailureStage.UNIT_CREATION
        assert failure.message.startswith("创建第3章失败")

    @pytest.mark.asyncio
    async def test_interactive_decision(self):
        service = FakeWritingService(failing_units={1})
        decider = InteractiveDecider()
        orchestrator = make_orchestrator(service, decider)

        orchestrator.confirm(2, 1)
        pending = await wait_for_pending_failure(orchestrator)
        assert pending.unit_number == 1
        assert decider.pending == pending
        assert decider.resolve("continue") is True

        snapshot = await asyncio.wait_for(orchestrator.wait(), timeout=5)
        assert snapshot.state == BatchState.COMPLETED
        assert snapshot.failed == [1]
        assert snapshot.succeeded == [2]
        assert snapshot.pending_failure is None
        assert decider.resolve("continue") is False

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_decision(self):
        service = FakeWritingService(failing_units={1})
        decider = InteractiveDecider()
        orchestrator = make_orchestrator(service, decider)

        orchestrator.confirm(3, 1)
        await wait_for_pending_failure(orchestrator)
        orchestrator.cancel()

        snapshot = await asyncio.wait_for(orchestrator.wait(), timeout=5)
        assert snapshot.state == BatchState.CANCELLED
        assert snapshot.current_index == 1
        assert service.created == []
        assert decider.pending is None


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_during_generation(self):
        service = FakeWritingService(blocking_unit=7)
        orchestrator = make_orchestrator(service)

        orchestrator.confirm(10, 5)
        await asyncio.wait_for(service.blocking_started.wait(), timeout=5)
        orchestrator.cancel()
        snapshot = await asyncio.wait_for(orchestrator.wait(), timeout=5)

        assert snapshot.state == BatchState.CANCELLED
        assert snapshot.current_index <= 3
        assert snapshot.succeeded == [5, 6]
        assert snapshot.failed == []
        assert service.created == [6, 7]
        assert orchestrator.session_snapshot().status == SessionStatus.ERRORED
        assert service.active == 0
        assert snapshot.summary == "批量生成已取消，已成功生成2章"

    @pytest.mark.asyncio
    async def test_cancel_right_after_confirm(self):
        service = FakeWritingService()
        orchestrator = make_orchestrator(service)

        orchestrator.confirm(3, 1)
        orchestrator.cancel()
        assert orchestrator.token.cancelled is True
        snapshot = await asyncio.wait_for(orchestrator.wait(), timeout=5)

        assert snapshot.state == BatchState.CANCELLED
        assert snapshot.current_index == 0
        assert snapshot.succeeded == []
        assert service.streamed == []
        assert service.created == []
        assert service.saved == {}

    @pytest.mark.asyncio
    async def test_cancel_during_grace_period(self):
        service = FakeWritingService()
        orchestrator = make_orchestrator(service, grace_period_s=5.0)

        orchestrator.confirm(3, 1)
        await wait_until(lambda: 1 in service.saved, "unit 1 was never saved")
        orchestrator.cancel()
        snapshot = await asyncio.wait_for(orchestrator.wait(), timeout=5)

        assert snapshot.state == BatchState.CANCELLED
        assert snapshot.succeeded == [1]
        assert snapshot.current_index == 1
        assert service.created == []
        assert service.streamed == [1]

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_unit_ready(self):
        service = FakeWritingService(never_ready={2})
        orchestrator = make_orchestrator(service, unit_ready_timeout_s=5.0)

        orchestrator.confirm(3, 1)
        await wait_until(
            lambda: orchestrator.snapshot().state == BatchState.AWAITING_UNIT_READY,
            "batch never waited for unit 2",
        )
        orchestrator.cancel()
        snapshot = await asyncio.wait_for(orchestrator.wait(), timeout=5)

        assert snapshot.state == BatchState.CANCELLED
        assert snapshot.current_index == 1
        assert snapshot.succeeded == [1]
        assert snapshot.failed == []
        assert service.created == [2]
        assert service.streamed == [1]

    @pytest.mark.asyncio
    async def test_no_hand_off_once_cancel_is_seen(self):
        service = FakeWritingService()
        orchestrator = make_orchestrator(service)

        def cancel_on_complete(snapshot):
            if snapshot.status == SessionStatus.COMPLETE:
                orchestrator.cancel()

        orchestrator.subscribe_sessions(cancel_on_complete)
        snapshot = await asyncio.wait_for(orchestrator.execute(3, 1), timeout=5)

        assert snapshot.state == BatchState.CANCELLED
        assert service.saved == {}
        assert service.created == []
        assert snapshot.succeeded == []
        assert snapshot.current_index == 1

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self):
        service = FakeWritingService(blocking_unit=1)
        orchestrator = make_orchestrator(service)
        orchestrator.confirm(2, 1)
        await asyncio.wait_for(service.blocking_started.wait(), timeout=5)
        orchestrator.cancel()
        orchestrator.cancel("again")
        snapshot = await asyncio.wait_for(orchestrator.wait(), timeout=5)
        assert snapshot.cancelled is True
        assert orchestrator.token.reason != "again"

    @pytest.mark.asyncio
    async def test_cancel_before_confirmation(self):
        orchestrator = make_orchestrator(FakeWritingService())
        orchestrator.propose(3, 1)
        snapshot = orchestrator.cancel()
        assert snapshot.state == BatchState.CANCELLED
        assert snapshot.summary == "批量生成已取消，已成功生成0章"

    @pytest.mark.asyncio
    async def test_cancel_after_completion_keeps_result(self):
        orchestrator = make_orchestrator(FakeWritingService())
        await asyncio.wait_for(orchestrator.execute(1, 1), timeout=5)
        snapshot = orchestrator.cancel()
        assert snapshot.state == BatchState.COMPLETED
        assert snapshot.cancelled is False


class TestControlSurface:
    @pytest.mark.asyncio
    async def test_confirm_while_running_is_rejected(self):
        service = FakeWritingService(blocking_unit=1)
        orchestrator = make_orchestrator(service)
        orchestrator.confirm(2, 1)
        with pytest.raises(BatchStateError):
            orchestrator.confirm(2, 1)
        with pytest.raises(BatchStateError):
            orchestrator.propose(2, 1)
        orchestrator.cancel()
        await asyncio.wait_for(orchestrator.wait(), timeout=5)

    @pytest.mark.asyncio
    async def test_confirm_uses_proposal(self):
        orchestrator = make_orchestrator(FakeWritingService())
        proposed = orchestrator.propose(2, 4)
        assert proposed.state == BatchState.AWAITING_CONFIRMATION
        orchestrator.confirm()
        snapshot = await asyncio.wait_for(orchestrator.wait(), timeout=5)
        assert snapshot.succeeded == [4, 5]

    def test_snapshot_without_job(self):
        orchestrator = make_orchestrator(FakeWritingService())
        snapshot = orchestrator.snapshot()
        assert snapshot.state == BatchState.IDLE
        assert orchestrator.session_snapshot() is None


class TestSummary:
    def test_all_succeeded(self):
        job = BatchJob(total_cycles=2, start_unit=1, succeeded={1, 2})
        assert build_summary(job) == "批量生成完成！已成功生成2章内容"

    def test_with_failures(self):
        job = BatchJob(total_cycles=4, start_unit=1, succeeded={1, 4}, failed={3, 2})
        assert build_summary(job) == "批量生成完成，成功生成2章，失败2章（第2、3章）"

    def test_cancelled(self):
        job = BatchJob(total_cycles=4, start_unit=1, succeeded={1}, cancelled=True)
        assert build_summary(job) == "批量生成已取消，已成功生成1章"

    def test_failure_moves_unit_between_sets(self):
        job = BatchJob(total_cycles=2, start_unit=1, succeeded={1})
        job.record_failure(
            CycleFailure(cycle_index=0, unit_number=1, stage=FailureStage.UNIT_READY, message="超时")
        )
        assert job.succeeded == set()
        assert job.failed == {1}
