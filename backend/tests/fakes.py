"""Fake collaborators shared by the orchestrator and API tests."""

import asyncio
from typing import Dict, List, Optional, Set

from models import SSEEvent


class FakeWritingService:
    """Stands in for the upstream service: streams, unit creation, readiness, persistence."""

    def __init__(
        self,
        failing_units: Optional[Set[int]] = None,
        never_ready: Optional[Set[int]] = None,
        failing_saves: Optional[Set[int]] = None,
        blocking_unit: Optional[int] = None,
        failing_creates: Optional[Set[int]] = None,
    ):
        self.failing_units = failing_units or set()
        self.never_ready = never_ready or set()
        self.failing_saves = failing_saves or set()
        self.failing_creates = failing_creates or set()
        self.blocking_unit = blocking_unit
        self.blocking_started = asyncio.Event()
        self.streamed: List[int] = []
        self.created: List[int] = []
        self.saved: Dict[int, str] = {}
        self.active = 0
        self.max_active = 0

    async def stream(self, unit_number: int):
        self.streamed.append(unit_number)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            yield SSEEvent.phase("正在准备写作环境...")
            await asyncio.sleep(0.002)
            if unit_number == self.blocking_unit:
                self.blocking_started.set()
                await asyncio.Event().wait()
            if unit_number in self.failing_units:
                yield SSEEvent.error("生成失败")
                return
            yield SSEEvent.message(f"第{unit_number}章的故事开始了。")
            yield SSEEvent.message("“走吧。”他说。")
            yield SSEEvent.done()
        finally:
            self.active -= 1

    async def create_next_unit(self, unit_number: int) -> None:
        if unit_number in self.failing_creates:
            raise RuntimeError("quota exceeded")
        self.created.append(unit_number)

    async def is_unit_ready(self, unit_number: int) -> bool:
        return unit_number not in self.never_ready

    async def save_unit(self, unit_number: int, title: str, content: str) -> None:
        if unit_number in self.failing_saves:
            raise RuntimeError("disk full")
        self.saved[unit_number] = content

