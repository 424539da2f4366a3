"""Per-request control flow.

States run strictly in order:

    VALIDATING -> STAGING -> INVOKING -> PUBLISHING -> FINALIZING -> TERMINAL

Every side effect is a journaled step, and everything the machine decides
(attempt counts, retry timers, results of earlier steps) is read back from the
journal. Running the machine twice with the same request and journal state
performs the same step calls, so the orchestrator can replay it at will.
"""

import logging
import random
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .classification import Classification
from .errors import (
    Cancelled,
    ErrorKind,
    StepFailure,
    ValidationError,
    diagnostic_excerpt,
)
from .ffmpeg_runner import EncoderProgress, FfmpegRunner
from .jobs import JobOutcome, ProcessingRequest, output_name, safe_key, validate_request
from .journal import StepJournal, StepJournalBridge, StepResult, StepStatus
from .journal.hashing import compute_output_hash, compute_request_hash
from .models import RetryConfig
from .storage import Storage, remove_file, remove_tree

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    VALIDATING = "validating"
    STAGING = "staging"
    INVOKING = "invoking"
    PUBLISHING = "publishing"
    FINALIZING = "finalizing"
    TERMINAL = "terminal"


# Once publishing begins the job runs to its outcome
UNCANCELLABLE_STATES = frozenset({JobState.PUBLISHING, JobState.FINALIZING, JobState.TERMINAL})


class SuspendRequested(Exception):
    """Raised when the job must wait on a durable timer longer than the suspend threshold."""

    def __init__(self, resume_after: datetime, reason: str) -> None:
        super().__init__(reason)
        self.resume_after = resume_after
        self.reason = reason


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RetryPolicy:
    """Exponential backoff with full jitter, bounded by a total attempt count."""

    max_attempts: int = 3
    backoff_base_s: float = 1.0
    backoff_ceiling_s: float = 60.0
    suspend_threshold_s: float = 30.0
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            backoff_base_s=config.backoff_base_s,
            backoff_ceiling_s=config.backoff_ceiling_s,
            suspend_threshold_s=config.suspend_threshold_s,
        )

    def backoff(self, attempts: int) -> float:
        """Delay before the attempt following ``attempts`` started attempts."""
        cap = min(self.backoff_ceiling_s, self.backoff_base_s * (2 ** max(attempts - 1, 0)))
        return self.rng.uniform(0.0, cap)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


class JobStateMachine:
    """Drives one ProcessingRequest to a JobOutcome.

    Example:
        >>> machine = JobStateMachine(request, journal, runner, storage, RetryPolicy(), "work")
        >>> outcome = machine.run()
        >>> outcome.output_descriptor
        'out-job-1.mp4'

    ``run()`` raises SuspendRequested when a retry timer is longer than the
    suspend threshold; calling ``run()`` again after ``resume_after`` continues
    where the journal left off.
    """

    def __init__(
        self,
        request: ProcessingRequest,
        journal: StepJournal,
        runner: FfmpegRunner,
        storage: Storage,
        retry_policy: RetryPolicy,
        work_root: str,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[Callable[[EncoderProgress], None]] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self.request = request
        self.journal = journal
        self.runner = runner
        self.storage = storage
        self.retry_policy = retry_policy
        self.work_root = Path(work_root)
        self.cancel_event = cancel_event or threading.Event()
        self.progress_callback = progress_callback
        self.stop_event = stop_event or threading.Event()

        self.bridge = StepJournalBridge(journal, request.key)
        self.state: Optional[JobState] = None
        self.history: List[JobState] = []
        self._state_lock = threading.Lock()

    # Paths are only meaningful once the key is validated

    @property
    def workdir(self) -> Path:
        return self.work_root / safe_key(self.request.key)

    @property
    def input_dir(self) -> Path:
        return self.workdir / "input"

    @property
    def descriptor(self) -> str:
        return output_name(self.request)

    @property
    def output_path(self) -> Path:
        return self.workdir / "output" / self.descriptor

    def cancel(self) -> bool:
        """Ask the job to stop.

        Refused once the job has reached publishing; a request accepted before
        that point is seen by the check that precedes every step.

        Returns:
            True if the job will end as Failed(Cancelled)
        """
        with self._state_lock:
            if self.state in UNCANCELLABLE_STATES:
                return False
            self.cancel_event.set()
            return True

    def _transition(self, state: JobState) -> None:
        with self._state_lock:
            previous, self.state = self.state, state
            self.history.append(state)
        logger.debug(
            "%s: %s -> %s", self.request.key, previous.value if previous else None, state.value,
            extra={"request_key": self.request.key},
        )

    # --- main loop ----------------------------------------------------------

    def run(self) -> JobOutcome:
        self._transition(JobState.VALIDATING)
        try:
            validate_request(self.request)
        except ValidationError as e:
            logger.warning("rejected request %r: %s", self.request.key, e.message)
            return self._terminal(
                JobOutcome.failed(self.request.key, ErrorKind.VALIDATION, e.message), record=False
            )

        recorded = self.journal.get_outcome(self.request.key)
        if recorded is not None:
            logger.info("returning recorded outcome for %s", self.request.key)
            self._transition(JobState.TERMINAL)
            return JobOutcome.model_validate(recorded)

        request_hash = compute_request_hash(self.request)
        stored_hash = self.journal.register_request(
            self.request.key, request_hash, self.request.model_dump(mode="json")
        )
        if stored_hash != request_hash:
            return self._terminal(
                JobOutcome.failed(
                    self.request.key,
                    ErrorKind.VALIDATION,
                    f"request key {self.request.key!r} was already used with different parameters",
                ),
                record=False,
            )

        try:
            self._transition(JobState.STAGING)
            stage = self._run_with_retry(
                "stage", self._stage, self._discard_staged, ErrorKind.STAGING, ErrorKind.STAGING
            )
            if not stage.ok:
                return self._fail(stage)

            self._transition(JobState.INVOKING)
            invoke = self._run_with_retry(
                "invoke",
                lambda: self._invoke(stage.payload),
                self._discard_output,
                ErrorKind.TRANSIENT_ENCODING,
                ErrorKind.ENCODING,
            )
            if not invoke.ok:
                return self._fail(invoke)

            self._transition(JobState.PUBLISHING)
            publish = self._run_with_retry(
                "publish",
                lambda: self._publish(invoke.payload),
                self._discard_published,
                ErrorKind.PUBLISHING,
                ErrorKind.PUBLISHING,
            )
            if not publish.ok:
                return self._fail(publish)
        except Cancelled as e:
            logger.warning("%s cancelled: %s", self.request.key, e.message)
            return self._terminal(JobOutcome.failed(self.request.key, ErrorKind.CANCELLED, e.message))

        self._transition(JobState.FINALIZING)
        self._finalize()

        payload = publish.payload
        return self._terminal(
            JobOutcome.completed(
                self.request.key,
                payload["descriptor"],
                payload["location"],
                sha256=payload.get("sha256"),
                size=payload.get("size"),
                stderr=invoke.payload.get("stderr_excerpt", ""),
            )
        )

    def _run_with_retry(
        self,
        step_name: str,
        work: Callable[[], Dict[str, Any]],
        on_retry: Callable[[], None],
        error_kind: ErrorKind,
        exhausted_kind: ErrorKind,
    ) -> StepResult:
        """Run a step until it completes, fails fatally or runs out of attempts."""
        while True:
            record = self.bridge.record(step_name)
            if record is not None and record.status != StepStatus.COMPLETED:
                if self.retry_policy.exhausted(record.attempts):
                    # A crash during the last allowed attempt
                    return self._give_up(
                        step_name, exhausted_kind, record.error_message or "attempt interrupted",
                        record.attempts,
                    )

            self._check_cancelled()
            if self.stop_event.is_set():
                raise SuspendRequested(utcnow(), "service shutting down")
            self._await_resume(step_name)

            try:
                return self.bridge.run_step(step_name, work, on_retry=on_retry, error_kind=error_kind)
            except StepFailure as failure:
                attempts = self.bridge.attempts(step_name)
                if self.retry_policy.exhausted(attempts):
                    return self._give_up(step_name, exhausted_kind, failure.message, attempts)

                delay = self.retry_policy.backoff(attempts)
                self.bridge.schedule_resume(step_name, utcnow() + timedelta(seconds=delay))
                logger.warning(
                    "retrying %s for %s in %.2fs (attempt %d/%d failed: %s)",
                    step_name, self.request.key, delay, attempts,
                    self.retry_policy.max_attempts, failure.kind.value,
                    extra={"request_key": self.request.key, "step": step_name},
                )

    def _give_up(self, step_name: str, kind: ErrorKind, message: str, attempts: int) -> StepResult:
        logger.error(
            "%s for %s failed after %d attempts", step_name, self.request.key, attempts,
            extra={"request_key": self.request.key, "step": step_name},
        )
        return self.bridge.fail_permanently(
            step_name,
            kind,
            diagnostic_excerpt(f"{message} (gave up after {attempts} attempts)"),
        )

    def _await_resume(self, step_name: str) -> None:
        """Honor a durable retry timer: sleep if short, suspend if long."""
        resume_after = self.bridge.resume_after(step_name)
        if resume_after is None:
            return

        remaining = (resume_after - utcnow()).total_seconds()
        if remaining <= 0:
            return
        if remaining > self.retry_policy.suspend_threshold_s:
            logger.info(
                "suspending %s until %s (%s backoff)", self.request.key,
                resume_after.isoformat(), step_name,
                extra={"request_key": self.request.key, "step": step_name},
            )
            raise SuspendRequested(resume_after, f"{step_name} retry backoff")
        if self.cancel_event.wait(remaining):
            raise Cancelled(f"cancelled while waiting to retry {step_name}")

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise Cancelled()

    def _fail(self, result: StepResult) -> JobOutcome:
        return self._terminal(
            JobOutcome.failed(
                self.request.key,
                ErrorKind(result.error_kind),
                result.error_message or "step failed",
            )
        )

    def _terminal(self, outcome: JobOutcome, record: bool = True) -> JobOutcome:
        self._transition(JobState.TERMINAL)
        if record:
            stored = self.journal.record_outcome(self.request.key, outcome.model_dump(mode="json"))
            outcome = JobOutcome.model_validate(stored)
            if not outcome.succeeded:
                # Best effort; not a journaled step
                remove_tree(self.workdir)

        if outcome.succeeded:
            logger.info(
                "%s completed: %s", self.request.key, outcome.location,
                extra={"request_key": self.request.key},
            )
        else:
            logger.warning(
                "%s failed: %s: %s", self.request.key,
                outcome.error_kind.value if outcome.error_kind else None, outcome.message,
                extra={"request_key": self.request.key},
            )
        return outcome

    # --- step work ----------------------------------------------------------

    def _stage(self) -> Dict[str, Any]:
        staged = self.storage.fetch(self.request.source, self.input_dir)
        return {"staged_path": str(staged), "size": staged.stat().st_size}

    def _discard_staged(self) -> None:
        remove_tree(self.input_dir)

    def _invoke(self, stage_payload: Dict[str, Any]) -> Dict[str, Any]:
        staged = Path(stage_payload["staged_path"])
        if not staged.is_file():
            raise StepFailure(ErrorKind.STAGING, f"staged input missing: {staged}", recoverable=False)

        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        result = self.runner.invoke(
            str(staged),
            self.request.output,
            str(self.output_path),
            cancel_event=self.cancel_event,
            cwd=str(self.workdir),
            progress_callback=self.progress_callback,
        )

        if result.classification == Classification.CANCELLED:
            raise Cancelled("cancelled while encoding")

        message = result.reason
        if result.stderr_excerpt:
            message = f"{result.reason}: {result.stderr_excerpt}"

        if result.classification == Classification.RECOVERABLE:
            raise StepFailure(ErrorKind.TRANSIENT_ENCODING, message, recoverable=True)
        if result.classification == Classification.FATAL:
            raise StepFailure(ErrorKind.ENCODING, message, recoverable=False)
        if not self.output_path.is_file():
            raise StepFailure(
                ErrorKind.ENCODING, "encoder exited 0 without producing output", recoverable=False
            )

        return {
            "output_path": str(self.output_path),
            "size": self.output_path.stat().st_size,
            "duration_s": round(result.duration_s, 3),
            "stderr_excerpt": result.stderr_excerpt,
        }

    def _discard_output(self) -> None:
        remove_file(self.output_path)

    def _publish(self, invoke_payload: Dict[str, Any]) -> Dict[str, Any]:
        output = Path(invoke_payload["output_path"])
        if not output.is_file():
            raise StepFailure(
                ErrorKind.PUBLISHING, f"encoded output missing: {output}", recoverable=False
            )

        sha256 = compute_output_hash(str(output))
        size = output.stat().st_size
        location = self.storage.publish(output, self.request.output.destination, self.descriptor)
        return {"location": location, "descriptor": self.descriptor, "sha256": sha256, "size": size}

    def _discard_published(self) -> None:
        self.storage.discard_partial(self.request.output.destination, self.descriptor)

    def _finalize(self) -> None:
        def work() -> Dict[str, Any]:
            error = remove_tree(self.workdir)
            if error:
                return {"removed": False, "error": error}
            return {"removed": True}

        try:
            self.bridge.run_step("finalize", work)
        except StepFailure as e:
            # Cleanup never downgrades a successful job
            logger.warning("finalize for %s failed: %s", self.request.key, e.message)
