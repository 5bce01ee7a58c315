"""
Generation session: the buffers and status of one chapter generation call.

The session is the single writer of its state. Observers get immutable
``SessionSnapshot`` values through ``snapshot()`` or ``subscribe()``.
"""

import asyncio
import logging
from datetime import datetime
from typing import AsyncIterator, Callable, List, Optional, Tuple

from core.cancellation import CancellationToken
from core.chapter_craft import derive_fallback_title, normalize_stream_title
from core.errors import ContentError, PipelineError
from core.event_interpreter import describe_progress
from core.text_formatter import IncrementalFormatter, realtime_format
from models import EventKind, SSEEvent, SessionSnapshot, SessionStatus

logger = logging.getLogger("inkstream.session")

SnapshotListener = Callable[[SessionSnapshot], None]

EMPTY_CONTENT_ERROR = "生成内容为空"
CANCELLED_ERROR = "生成已取消"

TERMINAL_STATUSES = {SessionStatus.COMPLETE, SessionStatus.ERRORED}


class InlineTitleExtractor:
    """Pulls a leading ``$标题$`` marker out of the first message deltas.

    Text is held back only while it could still be the marker. Once the
    marker closes, is abandoned, or never started, everything held is
    released in order, so the content stream loses nothing but the marker.
    """

    MAX_TITLE_CHARS = 40
    MARKER = "$"

    def __init__(self):
        self._held = ""
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def feed(self, delta: str) -> Tuple[str, Optional[str]]:
        if self._finished:
            return delta, None

        self._held += delta
        head = self._held.lstrip()
        if not head:
            return "", None
        if not head.startswith(self.MARKER):
            return self._release(), None

        body_and_rest = head[len(self.MARKER):]
        close_at = body_and_rest.find(self.MARKER)
        if close_at < 0:
            if "\n" in body_and_rest or len(body_and_rest) > self.MAX_TITLE_CHARS:
                return self._release(), None
            return "", None

        body = body_and_rest[:close_at]
        if "\n" in body or len(body) > self.MAX_TITLE_CHARS:
            return self._release(), None

        rest = body_and_rest[close_at + len(self.MARKER):]
        self._held = ""
        self._finished = True
        title = normalize_stream_title(body)
        return rest.lstrip("\n"), (title or None)

    def flush(self) -> str:
        return self._release()

    def _release(self) -> str:
        held = self._held
        self._held = ""
        self._finished = True
        return held


class GenerationSession:
    def __init__(self, unit_number: Optional[int] = None, *, realtime_preview: bool = False):
        self.unit_number = unit_number
        self.realtime_preview = realtime_preview
        self._status = SessionStatus.IDLE
        self._raw_text = ""
        self._formatted_text = ""
        self._preview_text: Optional[str] = None
        self._phase_log: List[str] = []
        self._title = ""
        self._last_error: Optional[str] = None
        self._event_count = 0
        self._started_at = datetime.now()
        self._updated_at = self._started_at
        self._formatter = IncrementalFormatter()
        self._title_extractor = InlineTitleExtractor()
        self._listeners: List[SnapshotListener] = []

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def is_terminal(self) -> bool:
        return self._status in TERMINAL_STATUSES

    @property
    def raw_text(self) -> str:
        return self._raw_text

    @property
    def formatted_text(self) -> str:
        return self._formatted_text

    @property
    def title(self) -> str:
        return self._title

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            unit_number=self.unit_number,
            status=self._status,
            raw_text=self._raw_text,
            formatted_text=self._formatted_text,
            preview_text=self._preview_text,
            phase_log=list(self._phase_log),
            title=self._title,
            last_error=self._last_error,
            event_count=self._event_count,
            started_at=self._started_at,
            updated_at=self._updated_at,
        )

    def result(self) -> SessionSnapshot:
        """Snapshot of a completed session; raises ContentError for any other outcome."""
        if self._status != SessionStatus.COMPLETE:
            raise ContentError(
                self._last_error or "生成未完成",
                detail=f"unit={self.unit_number} status={self._status.value}",
            )
        return self.snapshot()

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a listener called with a fresh snapshot after every change.

        Returns a function that removes the listener again.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def apply(self, event: SSEEvent) -> None:
        if self.is_terminal:
            logger.debug(
                "session event after terminal ignored unit=%s kind=%s status=%s",
                self.unit_number,
                event.kind.value,
                self._status.value,
            )
            return

        self._event_count += 1
        kind = event.kind
        if kind == EventKind.MESSAGE:
            self._apply_message(event.text)
        elif kind in (EventKind.PHASE, EventKind.OUTLINE):
            self._log_phase(event.text)
        elif kind == EventKind.PROGRESS:
            self._log_phase(describe_progress(event.step, event.text))
        elif kind == EventKind.TITLE:
            title = normalize_stream_title(event.text)
            if title:
                self._title = title
        elif kind == EventKind.ERROR:
            self._set_errored(event.text or "未知错误")
            return
        elif kind == EventKind.DONE:
            self.finish()
            return
        self._touch()

    def finish(self) -> None:
        """End of stream: Streaming becomes Complete, anything earlier is an empty result."""
        if self.is_terminal:
            return

        held = self._title_extractor.flush()
        if held:
            self._append_content(held)

        if self._status == SessionStatus.STREAMING and self._raw_text.strip():
            if not self._title:
                self._title = derive_fallback_title(self._raw_text)
            self._status = SessionStatus.COMPLETE
            logger.info(
                "session complete unit=%s chars=%d title=%s events=%d",
                self.unit_number,
                len(self._raw_text),
                self._title,
                self._event_count,
            )
            self._touch()
            return

        self._set_errored(EMPTY_CONTENT_ERROR)

    def fail(self, reason: str) -> None:
        if self.is_terminal:
            return
        self._set_errored(reason)

    def abort(self, reason: str = CANCELLED_ERROR) -> None:
        self.fail(reason)

    async def run(
        self,
        events: AsyncIterator[SSEEvent],
        token: Optional[CancellationToken] = None,
    ) -> SessionSnapshot:
        """Consume an event stream until a terminal status, end of stream or cancellation."""
        try:
            async for event in events:
                if token is not None and token.cancelled:
                    self.abort(token.reason or CANCELLED_ERROR)
                    break
                self.apply(event)
                if self.is_terminal:
                    break
            else:
                self.finish()
        except PipelineError as exc:
            logger.warning("session stream failed unit=%s error=%s", self.unit_number, exc)
            self.fail(str(exc))
        except asyncio.CancelledError:
            self.abort()
            raise
        finally:
            closer = getattr(events, "aclose", None)
            if closer is not None:
                await closer()
        return self.snapshot()

    def _apply_message(self, delta: str) -> None:
        if self._status in (SessionStatus.IDLE, SessionStatus.PREPARING):
            self._status = SessionStatus.STREAMING
            logger.info("session streaming unit=%s", self.unit_number)

        content, title = self._title_extractor.feed(delta)
        if title and not self._title:
            self._title = title
        if content:
            self._append_content(content)

    def _append_content(self, content: str) -> None:
        self._raw_text += content
        self._formatted_text = self._formatter.format(self._raw_text)
        if self.realtime_preview:
            self._preview_text = realtime_format(self._raw_text)

    def _log_phase(self, text: str) -> None:
        text = (text or "").strip()
        if not text:
            return
        if self._status == SessionStatus.IDLE:
            self._status = SessionStatus.PREPARING
            logger.info("session preparing unit=%s", self.unit_number)
        self._phase_log.append(text)

    def _set_errored(self, reason: str) -> None:
        self._status = SessionStatus.ERRORED
        self._last_error = reason
        logger.warning("session errored unit=%s error=%s", self.unit_number, reason)
        self._touch()

    def _touch(self) -> None:
        self._updated_at = datetime.now()
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("session listener failed unit=%s", self.unit_number)
