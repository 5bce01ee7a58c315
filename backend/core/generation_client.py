import asyncio
import logging
import threading
import time
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional

import requests

from core.errors import TransportError
from core.event_interpreter import interpret_record
from core.sse_stream import SSEDemultiplexer, SSERecord
from models import GenerationRequest, SSEEvent

logger = logging.getLogger("inkstream.client")

_STOP = object()


class GenerationClient:
    """Streams one chapter generation from the upstream writing service.

    ``requests`` reads the response body in a worker thread; chunks are
    handed to the event loop through an ``asyncio.Queue`` and turned into
    ``SSEEvent`` values as they arrive.
    """

    def __init__(
        self,
        base_url: str,
        generate_path: str,
        *,
        novel_id: str = "",
        auth_token: Optional[str] = None,
        connect_timeout_s: float = 10.0,
        read_timeout_s: float = 300.0,
        chunk_size: Optional[int] = None,
        http: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.generate_path = generate_path
        self.novel_id = novel_id
        self.auth_token = auth_token
        self.connect_timeout_s = connect_timeout_s
        self.read_timeout_s = read_timeout_s
        # None reads whatever has arrived, so short records are not held back.
        self.chunk_size = None if chunk_size is None else max(1, int(chunk_size))
        self._http = http or requests.Session()

    @classmethod
    def from_settings(cls, settings: Any, http: Optional[requests.Session] = None) -> "GenerationClient":
        return cls(
            settings.upstream_base_url,
            settings.generate_path,
            novel_id=settings.novel_id,
            auth_token=settings.auth_token,
            connect_timeout_s=settings.connect_timeout_s,
            read_timeout_s=settings.read_timeout_s,
            http=http,
        )

    def build_url(self) -> str:
        path = self.generate_path.format(novel_id=self.novel_id)
        if not path.startswith("/"):
            path = "/" + path
        return self.base_url + path

    def build_headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "text/event-stream",
            "Content-Type": "application/json",
            "Cache-Control": "no-cache",
        }
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    async def stream_events(self, request: GenerationRequest) -> AsyncIterator[SSEEvent]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        stop = threading.Event()
        worker_errors: List[BaseException] = []

        def post(item: Any) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                # Event loop already closed; nobody is left to read.
                stop.set()

        def stream_worker() -> None:
            try:
                for chunk in self._iter_body(request, stop):
                    post(chunk)
            except Exception as exc:
                worker_errors.append(exc)
            finally:
                post(_STOP)

        started = time.perf_counter()
        chunk_count = 0
        event_count = 0
        demux = SSEDemultiplexer()
        worker = threading.Thread(target=stream_worker, daemon=True)
        worker.start()
        logger.info("generation stream start unit=%d url=%s", request.unit_number, self.build_url())
        try:
            while True:
                chunk = await queue.get()
                if chunk is _STOP:
                    break
                chunk_count += 1
                for event in self._interpret(demux.feed(chunk)):
                    event_count += 1
                    yield event
                if demux.done:
                    break

            if worker_errors and not demux.done:
                raise worker_errors[0]

            for event in self._interpret(demux.close()):
                event_count += 1
                yield event
        finally:
            stop.set()
            await asyncio.to_thread(worker.join, 0.2)
            logger.info(
                "generation stream end unit=%d chunks=%d events=%d ignored_lines=%d elapsed_ms=%.2f",
                request.unit_number,
                chunk_count,
                event_count,
                demux.ignored_lines,
                (time.perf_counter() - started) * 1000,
            )

    def _interpret(self, records: List[SSERecord]) -> Iterator[SSEEvent]:
        for record in records:
            event = interpret_record(record.event, record.data)
            if event is not None:
                yield event

    def _iter_body(self, request: GenerationRequest, stop: threading.Event) -> Iterator[bytes]:
        url = self.build_url()
        try:
            response = self._http.post(
                url,
                json=request.to_payload(),
                headers=self.build_headers(),
                stream=True,
                timeout=(self.connect_timeout_s, self.read_timeout_s),
            )
        except requests.RequestException as exc:
            raise TransportError(f"连接写作服务失败: {exc}", detail=url) from exc

        with response:
            if response.status_code >= 400:
                raise TransportError(
                    f"写作服务返回错误状态 {response.status_code}",
                    status_code=response.status_code,
                    detail=_error_detail(response),
                )
            try:
                for chunk in response.iter_content(chunk_size=self.chunk_size):
                    if stop.is_set():
                        logger.debug("generation stream worker stopped unit=%d", request.unit_number)
                        return
                    if chunk:
                        yield chunk
            except requests.RequestException as exc:
                raise TransportError(
                    f"读取生成流失败: {exc}",
                    status_code=response.status_code,
                ) from exc


def _error_detail(response: requests.Response) -> Optional[str]:
    try:
        text = response.text
    except requests.RequestException:
        return None
    text = (text or "").strip()
    return text[:300] or None
