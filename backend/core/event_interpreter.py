import json
import logging
from typing import Any, Dict, Iterable, Iterator, Optional

from core.sse_stream import Chunk, SSERecord, iter_records
from models import SSEEvent
from utils.text_cleaner import is_status_noise

logger = logging.getLogger("inkstream.events")

NAMED_CHANNELS = {"phase", "outline", "title", "progress", "error"}
DONE_EVENTS = {"complete", "done"}
IGNORED_EVENTS = {"keepalive", "heartbeat", "ping", "meta"}
PHASE_EVENT_LABELS = {
    "preparing": "正在准备写作环境...",
    "writing": "正在AI写作中...",
    "start": "开始生成...",
    "context_ready": "写作上下文已就绪",
}
PROGRESS_STEP_LABELS = {
    "generating_summary": "正在生成章节概括...",
    "saving_chapter": "正在保存章节...",
    "updating_memory": "正在更新记忆库...",
    "final_coherence_check": "正在进行连贯性检查...",
}
CONTENT_KEYS = ("content", "generatedContent", "delta", "text")
_TEXT_KEYS = ("message", "detail", "content", "text", "title")


def describe_progress(step: str, message: str) -> str:
    label = PROGRESS_STEP_LABELS.get(step or "")
    if label:
        return label
    return (message or "").strip() or (step or "").strip()


def interpret_record(event_name: str, payload: str) -> Optional[SSEEvent]:
    """Classify one demultiplexed record. Returns None for records that carry nothing."""
    if event_name in NAMED_CHANNELS:
        return _interpret_named(event_name, payload)
    if event_name in DONE_EVENTS:
        return SSEEvent.done()
    if event_name in IGNORED_EVENTS:
        return None
    if event_name in PHASE_EVENT_LABELS:
        text = _payload_text(payload)
        return SSEEvent.phase(text or PHASE_EVENT_LABELS[event_name])
    return _interpret_content(payload)


def _interpret_named(event_name: str, payload: str) -> Optional[SSEEvent]:
    if event_name == "progress":
        step, message = _progress_fields(payload)
        if not step and not message:
            return None
        return SSEEvent.progress(step, message)

    text = _payload_text(payload)
    if event_name == "error":
        return SSEEvent.error(text or "未知错误")
    if not text:
        return None
    if event_name == "phase":
        return SSEEvent.phase(text)
    if event_name == "outline":
        return SSEEvent.outline(text)
    return SSEEvent.title(text)


def _progress_fields(payload: str) -> tuple[str, str]:
    parsed = _try_json(payload)
    if isinstance(parsed, dict):
        step = _scalar_text(parsed.get("step"))
        message = _scalar_text(parsed.get("message"))
        if message or step:
            return step, message
    elif isinstance(parsed, str):
        return "", parsed.strip()
    return "", payload.strip()


def _payload_text(payload: str) -> str:
    parsed = _try_json(payload)
    if isinstance(parsed, str):
        return parsed.strip()
    if isinstance(parsed, dict):
        for key in _TEXT_KEYS:
            value = _scalar_text(parsed.get(key))
            if value:
                return value.strip()
        return ""
    return payload.strip()


def _interpret_content(payload: str) -> Optional[SSEEvent]:
    if not payload:
        return None

    try:
        parsed = json.loads(payload)
    except ValueError:
        if is_status_noise(payload):
            logger.debug("raw status line routed to progress text=%r", payload[:60])
            return SSEEvent.progress("", payload.strip())
        return SSEEvent.message(payload)

    if isinstance(parsed, bool) or parsed is None:
        return None
    if isinstance(parsed, str):
        return _content_event(parsed)
    if isinstance(parsed, (int, float)):
        return _content_event(payload.strip())
    if isinstance(parsed, list):
        return _content_event("".join(_scalar_text(item) for item in parsed))
    if isinstance(parsed, dict):
        return _interpret_object(parsed)
    return None


def _interpret_object(obj: Dict[str, Any]) -> Optional[SSEEvent]:
    for key in CONTENT_KEYS:
        value = _scalar_text(obj.get(key))
        if value:
            return _content_event(value)

    message = _scalar_text(obj.get("message"))
    step = _scalar_text(obj.get("step"))
    if message and step:
        return SSEEvent.progress(step, message)

    logger.debug("json object without content dropped keys=%s", sorted(obj.keys())[:8])
    return None


def _content_event(delta: str) -> Optional[SSEEvent]:
    if not delta:
        return None
    if is_status_noise(delta, raw=False):
        return SSEEvent.progress("", delta.strip())
    return SSEEvent.message(delta)


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool) or value is None:
        return ""
    if isinstance(value, (str, int, float)):
        return str(value)
    return ""


def _try_json(payload: str) -> Any:
    if not payload:
        return None
    try:
        return json.loads(payload)
    except ValueError:
        return None


def iter_events(records: Iterable[SSERecord]) -> Iterator[SSEEvent]:
    for record in records:
        event = interpret_record(record.event, record.data)
        if event is not None:
            yield event


def iter_stream_events(chunks: Iterable[Chunk]) -> Iterator[SSEEvent]:
    """Demultiplex and interpret a whole chunk sequence, e.g. a recorded response body."""
    return iter_events(iter_records(chunks))
