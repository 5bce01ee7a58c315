from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field


class EventKind(str, Enum):
    PHASE = "phase"
    OUTLINE = "outline"
    MESSAGE = "message"
    TITLE = "title"
    PROGRESS = "progress"
    ERROR = "error"
    DONE = "done"


class SessionStatus(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERRORED = "errored"


class BatchState(str, Enum):
    IDLE = "idle"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    RUNNING_CYCLE = "running_cycle"
    AWAITING_GENERATION = "awaiting_generation"
    AWAITING_UNIT_CREATION = "awaiting_unit_creation"
    AWAITING_UNIT_READY = "awaiting_unit_ready"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class CycleDecision(str, Enum):
    CONTINUE = "continue"
    ABORT = "abort"


class FailureStage(str, Enum):
    GENERATION = "generation"
    PERSIST = "persist"
    UNIT_CREATION = "unit_creation"
    UNIT_READY = "unit_ready"


class SSEEvent(BaseModel):
    """One typed record of the generation stream.

    ``text`` carries the variant's payload: the phase/outline/title/error
    text, the message delta, or the progress message. ``step`` is only
    meaningful for progress events.
    """

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    text: str = ""
    step: str = ""

    @classmethod
    def phase(cls, text: str) -> "SSEEvent":
        return cls(kind=EventKind.PHASE, text=text)

    @classmethod
    def outline(cls, text: str) -> "SSEEvent":
        return cls(kind=EventKind.OUTLINE, text=text)

    @classmethod
    def message(cls, delta: str) -> "SSEEvent":
        return cls(kind=EventKind.MESSAGE, text=delta)

    @classmethod
    def title(cls, text: str) -> "SSEEvent":
        return cls(kind=EventKind.TITLE, text=text)

    @classmethod
    def progress(cls, step: str, message: str) -> "SSEEvent":
        return cls(kind=EventKind.PROGRESS, text=message, step=step)

    @classmethod
    def error(cls, text: str) -> "SSEEvent":
        return cls(kind=EventKind.ERROR, text=text)

    @classmethod
    def done(cls) -> "SSEEvent":
        return cls(kind=EventKind.DONE)

    @property
    def delta(self) -> str:
        return self.text if self.kind == EventKind.MESSAGE else ""


class SessionSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    unit_number: Optional[int] = None
    status: SessionStatus = SessionStatus.IDLE
    raw_text: str = ""
    formatted_text: str = ""
    preview_text: Optional[str] = None
    phase_log: List[str] = Field(default_factory=list)
    title: str = ""
    last_error: Optional[str] = None
    event_count: int = 0
    started_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class CycleFailure(BaseModel):
    cycle_index: int
    unit_number: int
    stage: FailureStage
    message: str
    created_at: datetime = Field(default_factory=datetime.now)


class BatchSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: BatchState = BatchState.IDLE
    total_cycles: int = 0
    current_index: int = 0
    start_unit: int = 0
    cancelled: bool = False
    succeeded: List[int] = Field(default_factory=list)
    failed: List[int] = Field(default_factory=list)
    failures: List[CycleFailure] = Field(default_factory=list)
    pending_failure: Optional[CycleFailure] = None
    summary: str = ""


class BatchJob(BaseModel):
    total_cycles: int = Field(ge=1)
    start_unit: int = Field(ge=1)
    current_index: int = 0
    cancelled: bool = False
    succeeded: Set[int] = Field(default_factory=set)
    failed: Set[int] = Field(default_factory=set)
    failures: List[CycleFailure] = Field(default_factory=list)
    pending_failure: Optional[CycleFailure] = None
    state: BatchState = BatchState.IDLE
    summary: str = ""
    created_at: datetime = Field(default_factory=datetime.now)

    def unit_for(self, index: int) -> int:
        return self.start_unit + index

    def is_last_cycle(self, index: int) -> bool:
        return index >= self.total_cycles - 1

    def mark_cancelled(self) -> None:
        self.cancelled = True

    def record_success(self, unit_number: int) -> None:
        self.failed.discard(unit_number)
        self.succeeded.add(unit_number)

    def record_failure(self, failure: CycleFailure) -> None:
        self.failures.append(failure)
        self.succeeded.discard(failure.unit_number)
        self.failed.add(failure.unit_number)

    def snapshot(self) -> BatchSnapshot:
        return BatchSnapshot(
            state=self.state,
            total_cycles=self.total_cycles,
            current_index=self.current_index,
            start_unit=self.start_unit,
            cancelled=self.cancelled,
            succeeded=sorted(self.succeeded),
            failed=sorted(self.failed),
            failures=list(self.failures),
            pending_failure=self.pending_failure,
            summary=self.summary,
        )


class GenerationRequest(BaseModel):
    unit_number: int = Field(ge=1)
    title: Optional[str] = None
    user_adjustment: Optional[str] = None
    prompt_template_id: Optional[int] = None
    model: Optional[str] = None
    reference_texts: List[str] = Field(default_factory=list)
    estimated_words: Optional[int] = Field(default=None, ge=1)

    def to_payload(self) -> Dict[str, Any]:
        chapter_plan: Dict[str, Any] = {"chapterNumber": self.unit_number}
        if self.title:
            chapter_plan["title"] = self.title
        if self.estimated_words:
            chapter_plan["estimatedWords"] = self.estimated_words

        payload: Dict[str, Any] = {
            "chapterNumber": self.unit_number,
            "chapterPlan": chapter_plan,
        }
        if self.user_adjustment:
            payload["userAdjustment"] = self.user_adjustment
        if self.prompt_template_id is not None:
            payload["promptTemplateId"] = self.prompt_template_id
        if self.model:
            payload["model"] = self.model
        references = [text for text in self.reference_texts if text and text.strip()]
        if references:
            payload["referenceTexts"] = references
        return payload


class BatchOptions(BaseModel):
    """Generation options shared by every cycle of a batch."""

    user_adjustment: Optional[str] = None
    prompt_template_id: Optional[int] = None
    model: Optional[str] = None
    reference_texts: List[str] = Field(default_factory=list)
    estimated_words: Optional[int] = Field(default=None, ge=1)

    def request_for(self, unit_number: int) -> GenerationRequest:
        return GenerationRequest(
            unit_number=unit_number,
            user_adjustment=self.user_adjustment,
            prompt_template_id=self.prompt_template_id,
            model=self.model,
            reference_texts=list(self.reference_texts),
            estimated_words=self.estimated_words,
        )
