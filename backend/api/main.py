import asyncio
import json
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, ValidationError

from core.config import Settings
from core.errors import BatchStateError
from core.generation_client import GenerationClient
from core.text_formatter import format_text, realtime_format
from models import BatchOptions, CycleDecision, SSEEvent, SessionSnapshot
from services.batch_orchestrator import (
    BatchOrchestrator,
    InteractiveDecider,
    policy_decider,
)
from services.unit_gateway import HttpUnitGateway

settings = Settings()
app = FastAPI(title="Inkstream API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger("inkstream.api")
if settings.log_file:
    log_path = Path(settings.log_file).expanduser().resolve()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    root_logger = logging.getLogger("inkstream")
    if not any(
        isinstance(handler, logging.FileHandler) and getattr(handler, "baseFilename", None) == str(log_path)
        for handler in root_logger.handlers
    ):
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
        file_handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        root_logger.addHandler(file_handler)
        logger.info("file logging enabled path=%s", log_path)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
HEARTBEAT_INTERVAL_S = 2.0


@app.middleware("http")
async def http_access_log_middleware(request: Request, call_next):
    if not settings.enable_http_logging:
        return await call_next(request)

    request_id = uuid4().hex[:8]
    started = time.perf_counter()
    logger.info(
        "REQ start id=%s method=%s path=%s query=%s",
        request_id,
        request.method,
        request.url.path,
        request.url.query or "-",
    )
    try:
        response = await call_next(request)
    except Exception:
        elapsed = (time.perf_counter() - started) * 1000
        logger.exception("REQ failed id=%s duration_ms=%.2f", request_id, elapsed)
        raise

    elapsed = (time.perf_counter() - started) * 1000
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "REQ end id=%s status=%s duration_ms=%.2f",
        request_id,
        response.status_code,
        elapsed,
    )
    return response


class BatchRuntime:
    """Wires one orchestrator to the upstream writing service."""

    def __init__(self, config: Settings):
        self.options = BatchOptions()
        self.client = GenerationClient.from_settings(config)
        self.gateway = HttpUnitGateway.from_settings(config)
        self.decider: Optional[InteractiveDecider] = None
        if config.failure_policy == "ask":
            self.decider = InteractiveDecider()
            decide = self.decider
        else:
            decide = policy_decider(config.failure_policy)
        self.orchestrator = BatchOrchestrator(
            self._open_stream,
            self.gateway.create_next_unit,
            self.gateway.is_unit_ready,
            decide,
            persist=self.gateway.save_unit,
            poll_interval_s=config.poll_interval_s,
            grace_period_s=config.grace_period_s,
            unit_ready_timeout_s=config.unit_ready_timeout_s,
            realtime_preview=config.realtime_preview_enabled,
        )

    def _open_stream(self, unit_number: int) -> AsyncIterator[SSEEvent]:
        return self.client.stream_events(self.options.request_for(unit_number))


runtime: Optional[BatchRuntime] = None


def get_runtime() -> BatchRuntime:
    global runtime
    if runtime is None:
        runtime = BatchRuntime(settings)
    return runtime


class FormatRequest(BaseModel):
    text: str = ""
    realtime: bool = False


class ProposeRequest(BaseModel):
    total_cycles: int = Field(default=settings.default_total_cycles, ge=1, le=100)
    start_unit: int = Field(ge=1)


class ConfirmRequest(BaseModel):
    total_cycles: Optional[int] = Field(default=None, ge=1, le=100)
    start_unit: Optional[int] = Field(default=None, ge=1)
    user_adjustment: Optional[str] = None
    prompt_template_id: Optional[int] = None
    model: Optional[str] = None
    reference_texts: List[str] = Field(default_factory=list)
    estimated_words: Optional[int] = Field(default=None, ge=1)

    def to_options(self) -> BatchOptions:
        return BatchOptions(
            user_adjustment=self.user_adjustment,
            prompt_template_id=self.prompt_template_id,
            model=self.model,
            reference_texts=self.reference_texts,
            estimated_words=self.estimated_words,
        )


class DecisionRequest(BaseModel):
    decision: CycleDecision


def _snapshot_json(snapshot: Optional[BaseModel]) -> Optional[Dict[str, Any]]:
    if snapshot is None:
        return None
    return snapshot.model_dump(mode="json")


@app.post("/api/format")
async def format_chapter_text(req: FormatRequest):
    formatter = realtime_format if req.realtime else format_text
    return {"formatted": formatter(req.text)}


@app.post("/api/batch/propose")
async def propose_batch(req: ProposeRequest):
    orchestrator = get_runtime().orchestrator
    try:
        snapshot = orchestrator.propose(req.total_cycles, req.start_unit)
    except BatchStateError as exc:
        raise HTTPException(status_code=409, detail=exc.message) from exc
    return _snapshot_json(snapshot)


@app.post("/api/batch/confirm")
async def confirm_batch(req: ConfirmRequest):
    current = get_runtime()
    orchestrator = current.orchestrator
    if orchestrator.running:
        raise HTTPException(status_code=409, detail="已有批量生成任务正在运行")
    if orchestrator.job is None and (req.total_cycles is None or req.start_unit is None):
        raise HTTPException(status_code=400, detail="请先提供批量生成的章节数和起始章节")

    current.options = req.to_options()
    try:
        snapshot = orchestrator.confirm(req.total_cycles, req.start_unit)
    except BatchStateError as exc:
        raise HTTPException(status_code=409, detail=exc.message) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info(
        "batch confirmed total=%d start_unit=%d model=%s template=%s",
        snapshot.total_cycles,
        snapshot.start_unit,
        req.model or "-",
        req.prompt_template_id if req.prompt_template_id is not None else "-",
    )
    return _snapshot_json(snapshot)


@app.post("/api/batch/cancel")
async def cancel_batch():
    return _snapshot_json(get_runtime().orchestrator.cancel())


@app.post("/api/batch/decision")
async def decide_batch_failure(req: DecisionRequest):
    current = get_runtime()
    if current.decider is None or not current.decider.resolve(req.decision):
        raise HTTPException(status_code=409, detail="当前没有等待处理的失败章节")
    # Let the orchestrator act on the decision before reporting state.
    await asyncio.sleep(0)
    return _snapshot_json(current.orchestrator.snapshot())


@app.get("/api/batch")
async def get_batch():
    return _snapshot_json(get_runtime().orchestrator.snapshot())


@app.get("/api/session")
async def get_session():
    return _snapshot_json(get_runtime().orchestrator.session_snapshot())


@app.get("/api/session/stream")
async def stream_session(request: Request):
    orchestrator = get_runtime().orchestrator
    queue: asyncio.Queue[SessionSnapshot] = asyncio.Queue()
    unsubscribe = orchestrator.subscribe_sessions(queue.put_nowait)
    current = orchestrator.session_snapshot()
    if current is not None:
        queue.put_nowait(current)

    async def event_stream():
        heartbeat = 0
        try:
            while True:
                try:
                    snapshot = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_INTERVAL_S)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        break
                    heartbeat += 1
                    heartbeat_payload = {
                        "seq": heartbeat,
                        "timestamp": datetime.now().isoformat(),
                    }
                    yield f"event: heartbeat\ndata: {json.dumps(heartbeat_payload, ensure_ascii=False)}\n\n"
                    continue

                payload = _snapshot_json(snapshot)
                yield f"event: snapshot\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"
        finally:
            unsubscribe()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.get("/api/health")
async def health_check():
    batch = get_runtime().orchestrator.snapshot()
    return {
        "status": "healthy",
        "batch_state": batch.state.value,
        "failure_policy": settings.failure_policy,
        "timestamp": datetime.now().isoformat(),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
