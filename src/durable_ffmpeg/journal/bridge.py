"""Step journal bridge: run side effects at most once per request key.

Every side-effecting unit of work of a request (stage, invoke, publish,
finalize) goes through ``StepJournalBridge.run_step``. The bridge looks the
step up by its deterministic id first. A completed record is returned as-is
and the work is skipped, which is what makes replay after a crash safe.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from ..errors import Cancelled, ErrorKind, StepFailure, diagnostic_excerpt
from .backends import StepJournal
from .hashing import compute_step_id
from .models import StepRecord, StepResult, StepStatus

logger = logging.getLogger(__name__)

StepWork = Callable[[], Optional[Dict[str, Any]]]


class StepJournalBridge:
    """Journal-aware step execution for one request key.

    Example:
        >>> bridge = StepJournalBridge(journal, "job-1")
        >>> result = bridge.run_step("stage", lambda: {"staged_path": "/work/job-1/input/in.mp4"})
        >>> result.ok, result.replayed
        (True, False)
        >>> bridge.run_step("stage", lambda: 1 / 0).replayed
        True
    """

    def __init__(self, journal: StepJournal, request_key: str):
        self.journal = journal
        self.request_key = request_key

    def step_id(self, step_name: str) -> str:
        return compute_step_id(self.request_key, step_name)

    def record(self, step_name: str) -> Optional[StepRecord]:
        return self.journal.get_step(self.step_id(step_name))

    def attempts(self, step_name: str) -> int:
        """Attempts started for a step so far, as recorded in the journal."""
        record = self.record(step_name)
        return record.attempts if record else 0

    def run_step(
        self,
        step_name: str,
        work: StepWork,
        on_retry: Optional[Callable[[], None]] = None,
        error_kind: ErrorKind = ErrorKind.ENCODING,
    ) -> StepResult:
        """Run ``work`` unless the journal already holds its result.

        Args:
            step_name: Step name; with the request key it determines the step id
            work: Callable returning the durable result payload (a JSON-able dict)
            on_retry: Cleanup hook for partial artifacts, called before the work
                when the journal shows an earlier attempt that never completed
            error_kind: Kind recorded when ``work`` raises an unclassified exception

        Returns:
            StepResult; ``ok`` is False only for a recorded fatal failure

        Raises:
            StepFailure: Recoverable failure; the step is left retryable
            Cancelled: The job was cancelled during the work
        """
        step_id = self.step_id(step_name)
        existing = self.journal.get_step(step_id)

        if existing is not None and existing.status == StepStatus.COMPLETED:
            logger.info(
                "replaying completed step %s for %s", step_name, self.request_key,
                extra={"request_key": self.request_key, "step": step_name},
            )
            return StepResult.from_record(existing, replayed=True)

        record = self.journal.begin_attempt(step_id, self.request_key, step_name)

        if existing is not None and on_retry is not None:
            # Earlier attempt failed or died mid-way; clear what it left behind
            logger.info(
                "cleaning partial artifacts of %s for %s (previous status %s)",
                step_name, self.request_key, existing.status.value,
                extra={"request_key": self.request_key, "step": step_name},
            )
            on_retry()

        logger.info(
            "running step %s for %s (attempt %d)", step_name, self.request_key, record.attempts,
            extra={"request_key": self.request_key, "step": step_name},
        )

        try:
            payload = work() or {}
        except StepFailure as failure:
            if failure.recoverable:
                self.journal.fail_step(step_id, failure.kind.value, failure.message)
                logger.warning(
                    "step %s for %s failed (recoverable): %s", step_name, self.request_key,
                    failure.message,
                    extra={"request_key": self.request_key, "step": step_name},
                )
                raise
            completed = self.journal.complete_step(
                step_id, {}, error_kind=failure.kind.value, error_message=failure.message
            )
            logger.error(
                "step %s for %s failed (fatal): %s", step_name, self.request_key, failure.message,
                extra={"request_key": self.request_key, "step": step_name},
            )
            return StepResult.from_record(completed, replayed=False)
        except Cancelled as cancelled:
            self.journal.fail_step(step_id, ErrorKind.CANCELLED.value, cancelled.message)
            raise
        except Exception as e:
            # Unclassified exceptions are treated as transient and bounded by the retry ceiling
            message = diagnostic_excerpt(f"{type(e).__name__}: {e}")
            self.journal.fail_step(step_id, error_kind.value, message)
            logger.warning(
                "step %s for %s raised %s", step_name, self.request_key, type(e).__name__,
                exc_info=True,
                extra={"request_key": self.request_key, "step": step_name},
            )
            raise StepFailure(error_kind, message, recoverable=True) from e

        completed = self.journal.complete_step(step_id, payload)
        return StepResult.from_record(completed, replayed=False)

    def fail_permanently(self, step_name: str, error_kind: ErrorKind, message: str) -> StepResult:
        """Close a step as completed-with-failure, e.g. after retries are exhausted."""
        step_id = self.step_id(step_name)
        if self.journal.get_step(step_id) is None:
            self.journal.begin_attempt(step_id, self.request_key, step_name)
        completed = self.journal.complete_step(
            step_id, {}, error_kind=ErrorKind(error_kind).value, error_message=message
        )
        return StepResult.from_record(completed, replayed=False)

    def schedule_resume(self, step_name: str, resume_after: datetime) -> None:
        """Persist the retry timer of a step so a replay honors the same delay."""
        self.journal.set_resume_after(self.step_id(step_name), resume_after)

    def resume_after(self, step_name: str) -> Optional[datetime]:
        record = self.record(step_name)
        if record is None or record.status == StepStatus.COMPLETED:
            return None
        return record.resume_after
