"""Pydantic models for step journal records.

A StepRecord is the durable trace of one named unit of work for one request
key. The journal stores it; the bridge reads it before doing any side effect.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepStatus(str, Enum):
    """Step states with explicit semantics.

    State transitions:
        (none)  → pending     (attempt started)
        pending → completed   (work succeeded, or failed fatally)
        pending → failed      (recoverable failure; the step may run again)
        failed  → pending     (retry attempt started)
    A completed step is never started again for the same request key.
    """

    PENDING = "pending"  # Attempt in progress, or process died mid-attempt
    COMPLETED = "completed"  # Result (or fatal error) recorded for good
    FAILED = "failed"  # Last attempt failed recoverably


class StepRecord(BaseModel):
    """Durable record of one step of one request."""

    model_config = ConfigDict(use_enum_values=False)

    step_id: str = Field(..., description="Deterministic id from (request_key, step_name)")
    request_key: str = Field(..., description="Request the step belongs to")
    step_name: str = Field(..., description="stage, invoke, publish, finalize or probe")
    status: StepStatus = Field(default=StepStatus.PENDING)
    attempts: int = Field(default=0, ge=0, description="Attempts started so far")
    result: Dict[str, Any] = Field(default_factory=dict, description="Durable result payload")
    error_kind: Optional[str] = Field(default=None, description="ErrorKind of the last failure")
    error_message: Optional[str] = Field(default=None, description="Bounded failure message")
    resume_after: Optional[datetime] = Field(
        default=None, description="Durable timer: do not retry before this time"
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def ok(self) -> bool:
        return self.status == StepStatus.COMPLETED and self.error_kind is None


class StepResult(BaseModel):
    """What ``run_step`` hands back to the state machine."""

    step_id: str
    ok: bool
    payload: Dict[str, Any] = Field(default_factory=dict)
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    replayed: bool = Field(default=False, description="Served from the journal without running")
    attempts: int = 0

    @classmethod
    def from_record(cls, record: StepRecord, replayed: bool) -> "StepResult":
        return cls(
            step_id=record.step_id,
            ok=record.ok,
            payload=record.result,
            error_kind=record.error_kind,
            error_message=record.error_message,
            replayed=replayed,
            attempts=record.attempts,
        )


class StepTransition(BaseModel):
    """Audit log entry for step status changes."""

    step_id: str
    request_key: str
    from_status: Optional[str] = None
    to_status: str
    timestamp: datetime = Field(default_factory=utcnow)
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of the error")
