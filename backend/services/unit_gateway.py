"""
HTTP gateway to the writing service's chapter endpoints.

Provides the two collaborators the batch orchestrator polls against
(``create_next_unit`` / ``is_unit_ready``) and the persistence hand-off
(``save_unit``). Calls are blocking ``requests`` calls moved off the event loop.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import requests

from core.errors import TransportError

logger = logging.getLogger("inkstream.gateway")

READY_STATUSES = {"ready", "draft", "pending", "empty", "created"}


class HttpUnitGateway:
    def __init__(
        self,
        base_url: str,
        *,
        create_unit_path: str = "/api/novels/{novel_id}/chapters",
        unit_status_path: str = "/api/novels/{novel_id}/chapters/{unit_number}",
        save_unit_path: str = "/api/novels/{novel_id}/chapters/{unit_number}",
        novel_id: str = "",
        auth_token: Optional[str] = None,
        timeout_s: float = 10.0,
        http: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.create_unit_path = create_unit_path
        self.unit_status_path = unit_status_path
        self.save_unit_path = save_unit_path
        self.novel_id = novel_id
        self.auth_token = auth_token
        self.timeout_s = timeout_s
        self._http = http or requests.Session()

    @classmethod
    def from_settings(cls, settings: Any, http: Optional[requests.Session] = None) -> "HttpUnitGateway":
        return cls(
            settings.upstream_base_url,
            create_unit_path=settings.create_unit_path,
            unit_status_path=settings.unit_status_path,
            save_unit_path=settings.save_unit_path,
            novel_id=settings.novel_id,
            auth_token=settings.auth_token,
            timeout_s=settings.connect_timeout_s,
            http=http,
        )

    async def create_next_unit(self, unit_number: int) -> None:
        body = {"chapterNumber": unit_number, "title": f"第{unit_number}章"}
        await asyncio.to_thread(self._request, "POST", self.create_unit_path, unit_number, body)
        logger.info("unit created unit=%d", unit_number)

    async def is_unit_ready(self, unit_number: int) -> bool:
        try:
            data = await asyncio.to_thread(self._request, "GET", self.unit_status_path, unit_number, None)
        except TransportError as exc:
            if exc.status_code == 404:
                return False
            raise
        return unit_is_ready(data)

    async def save_unit(self, unit_number: int, title: str, content: str) -> None:
        body = {"chapterNumber": unit_number, "title": title, "content": content}
        await asyncio.to_thread(self._request, "PUT", self.save_unit_path, unit_number, body)
        logger.info("unit saved unit=%d chars=%d", unit_number, len(content))

    def _url(self, path: str, unit_number: int) -> str:
        rendered = path.format(novel_id=self.novel_id, unit_number=unit_number)
        if not rendered.startswith("/"):
            rendered = "/" + rendered
        return self.base_url + rendered

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        return headers

    def _request(self, method: str, path: str, unit_number: int, body: Optional[Dict[str, Any]]) -> Any:
        url = self._url(path, unit_number)
        try:
            response = self._http.request(
                method,
                url,
                json=body,
                headers=self._headers(),
                timeout=self.timeout_s,
            )
        except requests.RequestException as exc:
            raise TransportError(f"请求写作服务失败: {exc}", detail=f"{method} {url}") from exc

        if response.status_code >= 400:
            raise TransportError(
                f"写作服务返回错误状态 {response.status_code}",
                status_code=response.status_code,
                detail=f"{method} {url}: {(response.text or '')[:200]}",
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            logger.debug("gateway non-json response method=%s url=%s", method, url)
            return None


def unit_is_ready(data: Any) -> bool:
    """Interpret a unit status payload.

    Accepts ``{"ready": bool}``, ``{"status": "..."}`` or a plain chapter
    record (present means ready), optionally wrapped in ``{"data": ...}``.
    """
    if isinstance(data, dict) and isinstance(data.get("data"), dict):
        data = data["data"]
    if isinstance(data, bool):
        return data
    if not isinstance(data, dict):
        return False
    if "ready" in data:
        return bool(data["ready"])
    status = data.get("status")
    if isinstance(status, str):
        return status.strip().lower() in READY_STATUSES
    return bool(data.get("id") or data.get("chapterNumber"))
