"""
Error types for the chapter generation pipeline.

Hierarchy:
- PipelineError (base)
  - TransportError  network/read failure on the generation stream
  - ContentError    explicit error event sent by the generator
  - CycleError      a batch cycle failed (generation, persistence, next unit)
    - UnitReadyTimeout  the next unit never became ready in time
  - BatchStateError a control call that conflicts with the running job

Malformed stream records are not represented here: they are recovered where
they are parsed and never surface as failures.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline failures.

    Attributes:
        message: short user-facing message
        detail: longer description for logs (defaults to message)
    """

    def __init__(self, message: str, detail: Optional[str] = None):
        self.message = message
        self.detail = detail or message
        super().__init__(self.message)


class TransportError(PipelineError):
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
    ):
        self.status_code = status_code
        super().__init__(message, detail=detail)


class ContentError(PipelineError):
    pass


class CycleError(PipelineError):
    def __init__(self, message: str, unit_number: int, stage: str, detail: Optional[str] = None):
        self.unit_number = unit_number
        self.stage = stage
        super().__init__(message, detail=detail)


class UnitReadyTimeout(CycleError):
    def __init__(self, unit_number: int, timeout_s: float):
        self.timeout_s = timeout_s
        super().__init__(
            f"等待第{unit_number}章准备就绪超时",
            unit_number=unit_number,
            stage="unit_ready",
            detail=f"unit {unit_number} not ready after {timeout_s:.1f}s",
        )


class BatchStateError(PipelineError):
    """A batch control call that does not fit the current job state."""
