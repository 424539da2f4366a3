"""Handler contract: the boundary the orchestrator calls into.

MediaService owns the long-lived pieces (journal, process registry, admission
gate, runner, storage, thread pool) and turns each ``handle`` call into either a
terminal JobOutcome or a SuspendSignal. Jobs run on pool threads; a call that
arrives while the same key is already running joins that activation instead of
starting a second one.
"""

import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from datetime import timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .admission import AdmissionGate
from .errors import (
    EncodingError,
    ErrorKind,
    StepFailure,
    TransientEncodingError,
    ValidationError,
)
from .ffmpeg_runner import EncoderProgress, FfmpegRunner, check_encoder, resolve_probe_binary
from .jobs import JobOutcome, ProcessingRequest, SuspendSignal, safe_key, validate_request
from .journal import SQLiteJournal, StepJournal, StepJournalBridge, StepRecord, StepStatus
from .journal.hashing import compute_request_hash
from .models import ServiceConfig
from .probe import ProbeRequest, ProbeResponse, run_ffprobe
from .process_registry import ProcessRegistry
from .state_machine import JobStateMachine, RetryPolicy, SuspendRequested, utcnow
from .storage import Storage, remove_tree

logger = logging.getLogger(__name__)

HandleResult = Union[JobOutcome, SuspendSignal]

# How soon the orchestrator should come back for a job that is still encoding
RUNNING_POLL_S = 1.0


class HealthReport(BaseModel):
    """Readiness of the service. Produced without side effects."""

    ready: bool
    checks: Dict[str, bool] = Field(default_factory=dict)
    encoder: Optional[str] = None


@dataclass
class _Activation:
    request: ProcessingRequest
    request_hash: str
    future: "Future[HandleResult]"
    machine: JobStateMachine


class MediaService:
    """Durable media-processing worker.

    Example:
        >>> service = MediaService(resolve_config())
        >>> service.handle(ProcessingRequest(key="job-1", source="in.mp4"))
        JobOutcome(request_key='job-1', status='completed', output_descriptor='out-job-1.mp4', ...)
        >>> service.shutdown()
    """

    def __init__(
        self,
        config: ServiceConfig,
        journal: Optional[StepJournal] = None,
        registry: Optional[ProcessRegistry] = None,
        runner: Optional[FfmpegRunner] = None,
        storage: Optional[Storage] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.config = config
        self._owns_journal = journal is None
        self.journal = journal or SQLiteJournal(config.storage.journal_path)
        self.registry = registry or ProcessRegistry(grace_period_s=config.encoder.kill_grace_period_s)
        self.gate = AdmissionGate(config.encoder.concurrency_limit)
        self.runner = runner or FfmpegRunner.from_config(config.encoder, self.registry, self.gate)
        self.storage = storage or Storage.from_config(config.storage)
        self.retry_policy = retry_policy or RetryPolicy.from_config(config.retry)

        self._executor = ThreadPoolExecutor(
            max_workers=config.server.max_workers, thread_name_prefix="durable-job"
        )
        # Re-entrant: a done-callback may run synchronously inside _activate
        self._lock = threading.RLock()
        self._inflight: Dict[str, _Activation] = {}
        self._closed = False
        self._stopping = threading.Event()
        self._probe_binary: Optional[str] = None

    # --- handle -------------------------------------------------------------

    def handle(
        self,
        request: ProcessingRequest,
        wait_s: Optional[float] = None,
        progress_callback: Optional[Callable[[EncoderProgress], None]] = None,
    ) -> HandleResult:
        """Process a request, or tell the orchestrator to come back later.

        Args:
            request: The request; its key is the idempotency key
            wait_s: How long to wait for the job (default ``server.handle_wait_s``,
                ``float("inf")`` blocks until the job ends or suspends)
            progress_callback: Receives encoder progress (only for a new activation)

        Returns:
            JobOutcome when terminal, SuspendSignal when a retry timer is long or the
            encoder is still running after ``wait_s``

        Raises:
            RuntimeError: The service is shutting down
        """
        if self._closed:
            raise RuntimeError("service is shutting down")

        try:
            validate_request(request)
        except ValidationError as e:
            logger.warning("rejected request %r: %s", request.key, e.message)
            return JobOutcome.failed(request.key, ErrorKind.VALIDATION, e.message)

        recorded = self.outcome(request.key)
        if recorded is not None:
            return recorded

        activation = self._activate(request, progress_callback)
        if activation.request_hash != compute_request_hash(request):
            return JobOutcome.failed(
                request.key,
                ErrorKind.VALIDATION,
                f"request key {request.key!r} is running with different parameters",
            )

        wait_s = self.config.server.handle_wait_s if wait_s is None else wait_s
        try:
            return activation.future.result(timeout=None if wait_s == float("inf") else wait_s)
        except FuturesTimeout:
            logger.info("%s still running after %.1fs; suspending caller", request.key, wait_s)
            return SuspendSignal.after_seconds(request.key, RUNNING_POLL_S, "encoder still running")

    def _activate(
        self,
        request: ProcessingRequest,
        progress_callback: Optional[Callable[[EncoderProgress], None]],
    ) -> _Activation:
        with self._lock:
            if self._closed:
                raise RuntimeError("service is shutting down")

            activation = self._inflight.get(request.key)
            # A finished future may still be listed until its done-callback runs
            if activation is not None and not activation.future.done():
                logger.info("joining in-flight activation of %s", request.key)
                return activation

            machine = JobStateMachine(
                request,
                self.journal,
                self.runner,
                self.storage,
                self.retry_policy,
                self.config.storage.work_root,
                progress_callback=progress_callback,
                stop_event=self._stopping,
            )
            future = self._executor.submit(self._run, machine)
            activation = _Activation(request, compute_request_hash(request), future, machine)
            self._inflight[request.key] = activation
            future.add_done_callback(lambda f, key=request.key: self._release(key, f))
            return activation

    def _release(self, key: str, future: Future) -> None:
        with self._lock:
            activation = self._inflight.get(key)
            if activation is not None and activation.future is future:
                del self._inflight[key]

    def _run(self, machine: JobStateMachine) -> HandleResult:
        request = machine.request
        try:
            return machine.run()
        except SuspendRequested as s:
            return SuspendSignal(request_key=request.key, resume_after=s.resume_after, reason=s.reason)
        except Exception:
            logger.exception("unexpected error while processing %s", request.key)
            raise

    # --- inspection and control --------------------------------------------

    def outcome(self, request_key: str) -> Optional[JobOutcome]:
        recorded = self.journal.get_outcome(request_key)
        return JobOutcome.model_validate(recorded) if recorded is not None else None

    def steps(self, request_key: str) -> List[StepRecord]:
        return self.journal.list_steps(request_key)

    def status(self, request_key: str) -> Optional[Dict[str, Any]]:
        """Outcome if terminal, otherwise running / suspended / pending. None if unknown."""
        recorded = self.outcome(request_key)
        if recorded is not None:
            return {"request_key": request_key, "status": recorded.status, "outcome": recorded}

        with self._lock:
            running = request_key in self._inflight
        if running:
            return {"request_key": request_key, "status": "running"}

        if self.journal.get_request(request_key) is None:
            return None

        now = utcnow()
        for record in self.steps(request_key):
            if (
                record.status != StepStatus.COMPLETED
                and record.resume_after is not None
                and record.resume_after.astimezone(timezone.utc) > now
            ):
                return {
                    "request_key": request_key,
                    "status": "suspended",
                    "resume_after": record.resume_after,
                    "step": record.step_name,
                }
        return {"request_key": request_key, "status": "pending"}

    @property
    def active_jobs(self) -> List[str]:
        with self._lock:
            return list(self._inflight)

    def cancel(self, request_key: str) -> bool:
        """Cancel a job.

        A running job has its encoder terminated and ends as Failed(Cancelled).
        A registered job that is not running (e.g. suspended) gets the same
        outcome recorded directly. Once the publish step has begun the job is
        past cancelling and runs to its outcome.

        Returns:
            True if the job will end as Failed(Cancelled)
        """
        with self._lock:
            activation = self._inflight.get(request_key)
        if activation is not None:
            if not activation.machine.cancel():
                logger.info("not cancelling %s: already %s", request_key, activation.machine.state.value)
                return False
            logger.info("cancelling running job %s", request_key)
            return True

        if self.journal.get_request(request_key) is None or self.outcome(request_key) is not None:
            return False
        if any(record.step_name == "publish" for record in self.steps(request_key)):
            logger.info("not cancelling %s: publishing has begun", request_key)
            return False

        logger.info("cancelling suspended job %s", request_key)
        self.journal.record_outcome(
            request_key,
            JobOutcome.failed(request_key, ErrorKind.CANCELLED, "job cancelled").model_dump(mode="json"),
        )
        remove_tree(Path(self.config.storage.work_root) / safe_key(request_key))
        return True

    # --- probe --------------------------------------------------------------

    @property
    def probe_binary(self) -> str:
        if self._probe_binary is None:
            self._probe_binary = resolve_probe_binary(
                self.config.encoder.probe_binary_path, self.runner.binary
            )
        return self._probe_binary

    def _run_ffprobe(self, request: ProbeRequest) -> ProbeResponse:
        try:
            binary = self.probe_binary
        except RuntimeError as e:
            raise TransientEncodingError(f"no ffprobe binary available: {e}") from e
        return run_ffprobe(
            request,
            binary,
            timeout_s=self.config.encoder.probe_timeout_s,
            excerpt_limit=self.config.encoder.excerpt_limit,
        )

    def probe(self, request: ProbeRequest) -> ProbeResponse:
        """Inspect media with ffprobe.

        Without ``request.key`` every call runs ffprobe. With a key the result
        is journaled under that key (and the rest of the request), so a retried
        call gets the recorded answer instead of probing again.

        Raises:
            EncodingError: ffprobe rejected the input (for a keyed probe this is
                recorded and replays raise again)
            TransientEncodingError: ffprobe could not run this time
        """
        if request.key is None:
            return self._run_ffprobe(request)

        bridge = StepJournalBridge(self.journal, f"probe-{compute_request_hash(request)[:16]}")

        def work() -> Dict[str, Any]:
            try:
                response = self._run_ffprobe(request)
            except TransientEncodingError as e:
                raise StepFailure(ErrorKind.TRANSIENT_ENCODING, e.message, recoverable=True) from e
            except EncodingError as e:
                raise StepFailure(ErrorKind.ENCODING, e.message, recoverable=False) from e
            return response.model_dump(mode="json")

        try:
            result = bridge.run_step("probe", work, error_kind=ErrorKind.TRANSIENT_ENCODING)
        except StepFailure as e:
            raise TransientEncodingError(e.message) from e

        if not result.ok:
            raise EncodingError(result.error_message or "ffprobe failed")
        return ProbeResponse.model_validate(result.payload)

    # --- health and lifecycle ----------------------------------------------

    def health(self) -> HealthReport:
        checks: Dict[str, bool] = {}

        try:
            encoder: Optional[str] = self.runner.binary
        except RuntimeError as e:
            logger.warning("no encoder binary available: %s", e)
            encoder = None
        checks["encoder"] = bool(encoder) and check_encoder(encoder)

        checks["work_root_writable"] = _writable(Path(self.config.storage.work_root))
        checks["journal"] = self.journal.ping()

        return HealthReport(ready=all(checks.values()), checks=checks, encoder=encoder)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work and kill running encoders.

        Running jobs are not cancelled: they suspend at their next step
        boundary and resume from the journal after a restart.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True

        self._stopping.set()
        killed = self.registry.terminate_all()
        if killed:
            logger.warning("terminated %d encoder process(es) on shutdown", killed)

        self._executor.shutdown(wait=wait)
        self.storage.close()
        if self._owns_journal:
            self.journal.close()


def _writable(path: Path) -> bool:
    """True if ``path`` (or the nearest existing parent it would be created in) is writable."""
    candidate = path.resolve()
    while not candidate.exists():
        if candidate.parent == candidate:
            return False
        candidate = candidate.parent
    return candidate.is_dir() and os.access(candidate, os.W_OK)
