"""
Batch orchestrator: chains N chapter generations into one unattended run.

Each cycle generates one unit, hands the result to persistence, waits a short
grace period, then creates the next unit and polls until it is ready. Cycles
are strictly sequential. Cancellation goes through one ``CancellationToken``
that every wait in here (generation polling, grace period, readiness
polling, failure decisions) observes.
"""

import asyncio
import inspect
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Union

from core.cancellation import CancellationToken
from core.errors import BatchStateError, ContentError, CycleError, UnitReadyTimeout
from core.generation_client import GenerationClient
from models import (
    BatchJob,
    BatchOptions,
    BatchSnapshot,
    BatchState,
    CycleDecision,
    CycleFailure,
    FailureStage,
    SSEEvent,
    SessionSnapshot,
    SessionStatus,
)
from services.generation_session import GenerationSession, SnapshotListener

logger = logging.getLogger("inkstream.batch")

StreamFactory = Callable[[int], AsyncIterator[SSEEvent]]
UnitCreator = Callable[[int], Awaitable[Any]]
UnitReadyCheck = Callable[[int], Awaitable[bool]]
PersistUnit = Callable[[int, str, str], Awaitable[Any]]
Decider = Callable[[CycleFailure], Union[CycleDecision, Awaitable[CycleDecision]]]
BatchListener = Callable[[BatchSnapshot], None]

MAX_TOTAL_CYCLES = 100
USER_CANCEL_REASON = "用户取消批量生成"
USER_ABORT_REASON = "用户中止批量生成"

_RUNNING_STATES = {
    BatchState.RUNNING_CYCLE,
    BatchState.AWAITING_GENERATION,
    BatchState.AWAITING_UNIT_CREATION,
    BatchState.AWAITING_UNIT_READY,
}


def build_summary(job: BatchJob) -> str:
    succeeded = len(job.succeeded)
    failed = sorted(job.failed)
    if job.cancelled:
        return f"批量生成已取消，已成功生成{succeeded}章"
    if not failed:
        return f"批量生成完成！已成功生成{succeeded}章内容"
    units = "、".join(str(unit) for unit in failed)
    return f"批量生成完成，成功生成{succeeded}章，失败{len(failed)}章（第{units}章）"


def policy_decider(policy: Union[str, CycleDecision]) -> Decider:
    """Non-interactive decision: skip-and-continue or fail-fast."""
    decision = CycleDecision(policy)

    def decide(failure: CycleFailure) -> CycleDecision:
        logger.info(
            "batch failure auto-decided unit=%d stage=%s decision=%s",
            failure.unit_number,
            failure.stage.value,
            decision.value,
        )
        return decision

    return decide


class InteractiveDecider:
    """Parks a failure until someone answers it with ``resolve``."""

    def __init__(self):
        self._future: Optional[asyncio.Future] = None
        self._pending: Optional[CycleFailure] = None

    @property
    def pending(self) -> Optional[CycleFailure]:
        return self._pending

    async def __call__(self, failure: CycleFailure) -> CycleDecision:
        self._future = asyncio.get_running_loop().create_future()
        self._pending = failure
        try:
            return await self._future
        finally:
            self._future = None
            self._pending = None

    def resolve(self, decision: Union[str, CycleDecision]) -> bool:
        """Answer the pending failure. Returns False when nothing is pending."""
        future = self._future
        if future is None or future.done():
            return False
        future.set_result(CycleDecision(decision))
        return True


def client_stream_factory(client: GenerationClient, options: Optional[BatchOptions] = None) -> StreamFactory:
    options = options or BatchOptions()

    def open_stream(unit_number: int) -> AsyncIterator[SSEEvent]:
        return client.stream_events(options.request_for(unit_number))

    return open_stream


class BatchOrchestrator:
    def __init__(
        self,
        stream_factory: StreamFactory,
        create_next_unit: UnitCreator,
        is_unit_ready: UnitReadyCheck,
        decide: Decider,
        *,
        persist: Optional[PersistUnit] = None,
        poll_interval_s: float = 0.5,
        grace_period_s: float = 2.0,
        unit_ready_timeout_s: float = 120.0,
        realtime_preview: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._stream_factory = stream_factory
        self._create_next_unit = create_next_unit
        self._is_unit_ready = is_unit_ready
        self._decide = decide
        self._persist = persist
        self.poll_interval_s = max(0.001, float(poll_interval_s))
        self.grace_period_s = max(0.0, float(grace_period_s))
        self.unit_ready_timeout_s = max(0.001, float(unit_ready_timeout_s))
        self.realtime_preview = realtime_preview
        self._clock = clock

        self.job: Optional[BatchJob] = None
        self.session: Optional[GenerationSession] = None
        self.token = CancellationToken()
        self._task: Optional[asyncio.Task] = None
        self._listeners: List[BatchListener] = []
        self._session_listeners: List[SnapshotListener] = []

    # -- control surface -------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def snapshot(self) -> BatchSnapshot:
        if self.job is None:
            return BatchSnapshot()
        return self.job.snapshot()

    def session_snapshot(self) -> Optional[SessionSnapshot]:
        return self.session.snapshot() if self.session is not None else None

    def subscribe(self, listener: BatchListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def subscribe_sessions(self, listener: SnapshotListener) -> Callable[[], None]:
        """Receive snapshots of every session this orchestrator runs, current and future."""
        self._session_listeners.append(listener)
        detach = self.session.subscribe(listener) if self.session is not None else None

        def unsubscribe() -> None:
            if listener in self._session_listeners:
                self._session_listeners.remove(listener)
            if detach is not None:
                detach()

        return unsubscribe

    def propose(self, total_cycles: int, start_unit: int) -> BatchSnapshot:
        if self.running:
            raise BatchStateError("已有批量生成任务正在运行")
        total_cycles = min(int(total_cycles), MAX_TOTAL_CYCLES)
        self.job = BatchJob(
            total_cycles=total_cycles,
            start_unit=start_unit,
            state=BatchState.AWAITING_CONFIRMATION,
        )
        self.session = None
        logger.info("batch proposed total=%d start_unit=%d", total_cycles, start_unit)
        self._notify()
        return self.job.snapshot()

    def confirm(self, total_cycles: Optional[int] = None, start_unit: Optional[int] = None) -> BatchSnapshot:
        """Start the proposed job (or a new one from the arguments) as a background task."""
        if self.running:
            raise BatchStateError("已有批量生成任务正在运行")
        job = self.job
        if total_cycles is not None or start_unit is not None or job is None:
            if total_cycles is None or start_unit is None:
                if job is None:
                    raise BatchStateError("请先提供批量生成的章节数和起始章节")
                total_cycles = job.total_cycles if total_cycles is None else total_cycles
                start_unit = job.start_unit if start_unit is None else start_unit
            self.propose(total_cycles, start_unit)
        elif job.state != BatchState.AWAITING_CONFIRMATION:
            raise BatchStateError("当前没有等待确认的批量任务")

        self.token = CancellationToken()
        self._task = asyncio.create_task(self.run())
        return self.snapshot()

    async def execute(self, total_cycles: int, start_unit: int) -> BatchSnapshot:
        """Propose, confirm and wait for a whole batch."""
        self.confirm(total_cycles, start_unit)
        return await self.wait()

    async def wait(self) -> BatchSnapshot:
        if self._task is not None:
            await asyncio.shield(self._task)
        return self.snapshot()

    def cancel(self, reason: str = USER_CANCEL_REASON) -> BatchSnapshot:
        job = self.job
        if job is None or job.state in (BatchState.CANCELLED, BatchState.COMPLETED):
            return self.snapshot()
        if job.state == BatchState.AWAITING_CONFIRMATION and not self.running:
            job.mark_cancelled()
            self._finish(job, time.perf_counter())
            return job.snapshot()
        if self.token.cancel(reason):
            job.mark_cancelled()
            logger.info("batch cancel requested index=%d reason=%s", job.current_index, reason)
            self._notify()
        return job.snapshot()

    # -- cycle loop ------------------------------------------------------

    async def run(self) -> BatchSnapshot:
        job = self.job
        if job is None:
            raise BatchStateError("当前没有批量任务")
        token = self.token
        started = time.perf_counter()
        if job.cancelled or token.cancelled:
            logger.info("batch cancelled before start start_unit=%d", job.start_unit)
            job.mark_cancelled()
            self._finish(job, started)
            return job.snapshot()
        logger.info("batch start total=%d start_unit=%d", job.total_cycles, job.start_unit)
        try:
            for index in range(job.total_cycles):
                if token.cancelled:
                    break
                job.current_index = index
                self._set_state(BatchState.RUNNING_CYCLE)
                cycle_started = time.perf_counter()
                proceed = await self._run_cycle(job, index, token)
                logger.info(
                    "batch cycle done index=%d unit=%d elapsed_ms=%.2f",
                    index,
                    job.unit_for(index),
                    (time.perf_counter() - cycle_started) * 1000,
                )
                job.current_index = index + 1
                if not proceed or token.cancelled:
                    break
        except asyncio.CancelledError:
            token.cancel("批量任务被中断")
            if self.session is not None:
                self.session.abort()
            job.mark_cancelled()
            self._finish(job, started)
            raise
        except Exception:
            logger.exception("batch crashed index=%d", job.current_index)
            token.cancel("批量任务异常终止")
            job.mark_cancelled()
            self._finish(job, started)
            raise

        if token.cancelled:
            job.mark_cancelled()
        self._finish(job, started)
        return job.snapshot()

    async def _run_cycle(self, job: BatchJob, index: int, token: CancellationToken) -> bool:
        """Run one cycle. Returns False when the batch must stop after it."""
        unit = job.unit_for(index)
        try:
            result = await self._generate(job, unit, token)
            if result is None:
                return False
            if token.cancelled:
                logger.info("batch hand-off skipped after cancel unit=%d", unit)
                return False
            await self._hand_off(unit, result)
            cancelled_in_grace = await token.sleep(self.grace_period_s)
            job.record_success(unit)
            self._notify()
            if cancelled_in_grace:
                return False
        except CycleError as exc:
            if not await self._resolve_failure(job, index, exc, token):
                return False

        if job.is_last_cycle(index):
            return True
        if token.cancelled:
            return False

        try:
            return await self._prepare_next_unit(job, unit, token)
        except CycleError as exc:
            return await self._resolve_failure(job, index, exc, token)

    async def _generate(
        self, job: BatchJob, unit: int, token: CancellationToken
    ) -> Optional[SessionSnapshot]:
        session = GenerationSession(unit, realtime_preview=self.realtime_preview)
        for listener in self._session_listeners:
            session.subscribe(listener)
        self.session = session
        self._set_state(BatchState.AWAITING_GENERATION)

        task = asyncio.create_task(session.run(self._stream_factory(unit), token))
        while not session.is_terminal and not task.done():
            if await token.sleep(self.poll_interval_s):
                break

        if token.cancelled and session.status != SessionStatus.COMPLETE:
            session.abort(token.reason or USER_CANCEL_REASON)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            logger.info("batch generation cancelled unit=%d", unit)
            return None

        outcome = (await asyncio.gather(task, return_exceptions=True))[0]
        if isinstance(outcome, BaseException) and not session.is_terminal:
            logger.error("batch generation crashed unit=%d error=%r", unit, outcome)
            session.fail(str(outcome) or outcome.__class__.__name__)

        try:
            return session.result()
        except ContentError as exc:
            raise CycleError(exc.message, unit_number=unit, stage=FailureStage.GENERATION.value) from exc

    async def _hand_off(self, unit: int, result: SessionSnapshot) -> None:
        if self._persist is None:
            return
        try:
            await self._persist(unit, result.title, result.formatted_text)
        except Exception as exc:
            logger.warning("batch persist failed unit=%d error=%s", unit, exc)
            raise CycleError(
                f"保存第{unit}章失败: {exc}",
                unit_number=unit,
                stage=FailureStage.PERSIST.value,
            ) from exc

    async def _prepare_next_unit(self, job: BatchJob, unit: int, token: CancellationToken) -> bool:
        next_unit = unit + 1
        self._set_state(BatchState.AWAITING_UNIT_CREATION)
        try:
            await self._create_next_unit(next_unit)
        except Exception as exc:
            raise CycleError(
                f"创建第{next_unit}章失败: {exc}",
                unit_number=next_unit,
                stage=FailureStage.UNIT_CREATION.value,
            ) from exc

        self._set_state(BatchState.AWAITING_UNIT_READY)
        deadline = self._clock() + self.unit_ready_timeout_s
        while True:
            try:
                ready = await self._is_unit_ready(next_unit)
            except Exception as exc:
                logger.warning("batch unit ready check failed unit=%d error=%s", next_unit, exc)
                ready = False
            if ready:
                logger.info("batch next unit ready unit=%d", next_unit)
                return True
            if self._clock() >= deadline:
                raise UnitReadyTimeout(next_unit, self.unit_ready_timeout_s)
            if await token.sleep(self.poll_interval_s):
                return False

    async def _resolve_failure(
        self, job: BatchJob, index: int, exc: CycleError, token: CancellationToken
    ) -> bool:
        """Ask for a decision on a failed cycle. Returns True to carry on with the batch."""
        failure = CycleFailure(
            cycle_index=index,
            unit_number=job.unit_for(index),
            stage=FailureStage(exc.stage),
            message=exc.message,
        )
        logger.warning(
            "batch cycle failed index=%d unit=%d stage=%s error=%s",
            index,
            failure.unit_number,
            failure.stage.value,
            exc.detail,
        )
        job.pending_failure = failure
        self._notify()
        try:
            decision = await self._await_decision(failure, token)
        finally:
            job.pending_failure = None

        job.record_failure(failure)
        if decision is None:
            self._notify()
            return False
        if decision == CycleDecision.ABORT:
            token.cancel(USER_ABORT_REASON)
            job.mark_cancelled()
            self._notify()
            return False
        self._notify()
        return True

    async def _await_decision(
        self, failure: CycleFailure, token: CancellationToken
    ) -> Optional[CycleDecision]:
        if token.cancelled:
            return None
        try:
            maybe = self._decide(failure)
        except Exception:
            logger.exception("batch decider failed unit=%d", failure.unit_number)
            return CycleDecision.ABORT
        if not inspect.isawaitable(maybe):
            return CycleDecision(maybe)

        pending = asyncio.ensure_future(maybe)
        cancelled = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({pending, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
        if not pending.done():
            pending.cancel()
            await asyncio.gather(pending, return_exceptions=True)
            return None
        if pending.cancelled():
            return None
        if pending.exception() is not None:
            logger.error("batch decider failed unit=%d error=%r", failure.unit_number, pending.exception())
            return CycleDecision.ABORT
        return CycleDecision(pending.result())

    # -- bookkeeping -----------------------------------------------------

    def _set_state(self, state: BatchState) -> None:
        if self.job is None:
            return
        self.job.state = state
        self._notify()

    def _finish(self, job: BatchJob, started: float) -> None:
        job.state = BatchState.CANCELLED if job.cancelled else BatchState.COMPLETED
        job.summary = build_summary(job)
        logger.info(
            "batch finished state=%s succeeded=%s failed=%s elapsed_ms=%.2f",
            job.state.value,
            sorted(job.succeeded),
            sorted(job.failed),
            (time.perf_counter() - started) * 1000,
        )
        self._notify()

    def _notify(self) -> None:
        if self.job is None or not self._listeners:
            return
        snapshot = self.job.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("batch listener failed")
