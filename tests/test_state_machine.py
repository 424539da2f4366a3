"""Tests for the per-request state machine: replay, retries, crashes, suspension."""

import random
import shutil
import threading
import time
from datetime import timedelta
from pathlib import Path

import psutil
import pytest

from durable_ffmpeg.admission import AdmissionGate
from durable_ffmpeg.errors import ErrorKind, StepFailure
from durable_ffmpeg.ffmpeg_runner import FfmpegRunner
from durable_ffmpeg.jobs import ProcessingRequest
from durable_ffmpeg.journal import SQLiteJournal, StepStatus, compute_output_hash, compute_step_id
from durable_ffmpeg.process_registry import ProcessRegistry
from durable_ffmpeg.state_machine import (
    JobState,
    JobStateMachine,
    RetryPolicy,
    SuspendRequested,
    utcnow,
)
from durable_ffmpeg.storage import Storage, partial_path


class SimulatedCrash(BaseException):
    """Stands in for the process dying mid-step; nothing below catches it."""


class MaxJitter(random.Random):
    """Always picks the top of the jitter window."""

    def uniform(self, a, b):
        return b


@pytest.fixture
def journal(config):
    j = SQLiteJournal(config.storage.journal_path)
    yield j
    j.close()


@pytest.fixture
def runner(config):
    registry = ProcessRegistry(grace_period_s=1.0)
    runner = FfmpegRunner.from_config(config.encoder, registry, AdmissionGate(2))
    yield runner
    registry.terminate_all()


@pytest.fixture
def storage(config):
    s = Storage.from_config(config.storage)
    yield s
    s.close()


@pytest.fixture
def make_machine(config, journal, runner, storage):
    """Fresh machine over shared journal/runner/storage, as after a restart."""

    def _make(request, retry_policy=None, **kwargs) -> JobStateMachine:
        return JobStateMachine(
            request,
            journal,
            runner,
            storage,
            retry_policy or RetryPolicy.from_config(config.retry),
            config.storage.work_root,
            **kwargs,
        )

    return _make


def step_names(journal, key):
    return [s.step_name for s in journal.list_steps(key)]


class TestEndToEnd:
    """The job-1 scenario."""

    def test_job_1_completes(self, make_machine, journal, fake_encoder, source_file, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        request = ProcessingRequest(key="job-1", source="in.mp4", output={"codec": "h264", "bitrate": "2M"})

        machine = make_machine(request)
        outcome = machine.run()

        assert outcome.succeeded
        assert outcome.output_descriptor == "out-job-1.mp4"
        published = (tmp_path / "outputs" / "out-job-1.mp4").resolve()
        assert Path(outcome.location) == published
        assert published.read_bytes() == b"encoded:" + source_file.read_bytes()
        assert outcome.details["sha256"] == compute_output_hash(str(published))
        assert outcome.details["size"] == published.stat().st_size
        assert "Duration: 00:00:02.00" in outcome.details["stderr"]
        assert "out_time=" not in outcome.details["stderr"]

        steps = journal.list_steps("job-1")
        assert [s.step_name for s in steps] == ["stage", "invoke", "publish", "finalize"]
        assert all(s.status == StepStatus.COMPLETED for s in steps)

        invocations = fake_encoder.invocations
        assert len(invocations) == 1
        assert "libx264" in invocations[0]["args"]
        assert "2M" in invocations[0]["args"]

        assert machine.history == [
            JobState.VALIDATING,
            JobState.STAGING,
            JobState.INVOKING,
            JobState.PUBLISHING,
            JobState.FINALIZING,
            JobState.TERMINAL,
        ]
        assert not machine.workdir.exists()

    def test_replay_returns_recorded_outcome(self, make_machine, job_request, fake_encoder):
        first = make_machine(job_request).run()

        machine = make_machine(job_request)
        second = machine.run()

        assert second == first
        assert len(fake_encoder.invocations) == 1
        assert machine.history == [JobState.VALIDATING, JobState.TERMINAL]

    def test_recorded_outcome_wins_over_new_parameters(self, make_machine, job_request, fake_encoder):
        first = make_machine(job_request).run()
        changed = job_request.model_copy(update={"output": job_request.output.model_copy(update={"bitrate": "4M"})})

        assert make_machine(changed).run() == first
        assert len(fake_encoder.invocations) == 1

    def test_custom_destination(self, make_machine, source_file, tmp_path):
        request = ProcessingRequest(
            key="job-9",
            source=str(source_file),
            output={"container": "mkv", "destination": str(tmp_path / "renders")},
        )
        outcome = make_machine(request).run()

        assert outcome.output_descriptor == "out-job-9.mkv"
        assert (tmp_path / "renders" / "out-job-9.mkv").exists()


class TestValidation:
    """Validation failures never touch the journal."""

    def test_empty_key(self, make_machine, journal, fake_encoder):
        outcome = make_machine(ProcessingRequest(key="", source="in.mp4")).run()

        assert outcome.error_kind == ErrorKind.VALIDATION
        assert journal.list_requests() == []
        assert journal.list_steps("") == []
        assert fake_encoder.invocations == []

    def test_missing_source(self, make_machine, journal):
        outcome = make_machine(ProcessingRequest(key="job-2")).run()

        assert outcome.error_kind == ErrorKind.VALIDATION
        assert journal.list_steps("job-2") == []
        assert journal.get_outcome("job-2") is None


class TestCrashReplay:
    """Idempotence across simulated crashes at each step."""

    def test_crash_during_stage(self, make_machine, journal, storage, job_request, fake_encoder, monkeypatch):
        real_fetch = storage.fetch
        calls = []

        def crashing_fetch(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise SimulatedCrash()
            return real_fetch(*args, **kwargs)

        monkeypatch.setattr(storage, "fetch", crashing_fetch)

        with pytest.raises(SimulatedCrash):
            make_machine(job_request).run()
        assert journal.get_step(compute_step_id("job-1", "stage")).status == StepStatus.PENDING

        outcome = make_machine(job_request).run()

        assert outcome.succeeded
        assert journal.get_step(compute_step_id("job-1", "stage")).attempts == 2
        assert journal.get_step(compute_step_id("job-1", "invoke")).attempts == 1
        assert len(fake_encoder.invocations) == 1

    def test_crash_after_encoder_finished(self, make_machine, journal, runner, job_request, fake_encoder, monkeypatch):
        """Encoder ran but the result never reached the journal: it runs again, once."""
        real_invoke = runner.invoke
        results = []

        def crashing_invoke(*args, **kwargs):
            results.append(real_invoke(*args, **kwargs))
            if len(results) == 1:
                raise SimulatedCrash()
            return results[-1]

        monkeypatch.setattr(runner, "invoke", crashing_invoke)

        with pytest.raises(SimulatedCrash):
            make_machine(job_request).run()

        stage_before = journal.get_step(compute_step_id("job-1", "stage"))
        outcome = make_machine(job_request).run()

        assert outcome.succeeded
        # Stage was replayed from the journal, not fetched again
        assert journal.get_step(compute_step_id("job-1", "stage")).updated_at == stage_before.updated_at
        assert journal.get_step(compute_step_id("job-1", "invoke")).attempts == 2
        assert len(fake_encoder.invocations) == 2

    def test_crash_during_publish(self, make_machine, journal, storage, job_request, fake_encoder, tmp_path, monkeypatch):
        real_publish = storage.publish
        calls = []

        def crashing_publish(path, destination, name):
            calls.append(1)
            if len(calls) == 1:
                # Died halfway through the copy
                partial = partial_path(tmp_path / "outputs" / name)
                partial.parent.mkdir(parents=True, exist_ok=True)
                partial.write_bytes(b"half")
                raise SimulatedCrash()
            return real_publish(path, destination, name)

        monkeypatch.setattr(storage, "publish", crashing_publish)

        with pytest.raises(SimulatedCrash):
            make_machine(job_request).run()

        outcome = make_machine(job_request).run()

        assert outcome.succeeded
        assert len(fake_encoder.invocations) == 1
        assert journal.get_step(compute_step_id("job-1", "publish")).attempts == 2
        assert not partial_path(tmp_path / "outputs" / "out-job-1.mp4").exists()
        assert (tmp_path / "outputs" / "out-job-1.mp4").exists()

    def test_crash_after_publish_before_finalize(self, make_machine, journal, storage, job_request, fake_encoder, monkeypatch):
        real_publish = storage.publish
        published = []

        def counting_publish(*args, **kwargs):
            published.append(1)
            return real_publish(*args, **kwargs)

        def crash(*args, **kwargs):
            raise SimulatedCrash()

        monkeypatch.setattr(storage, "publish", counting_publish)
        machine = make_machine(job_request)
        monkeypatch.setattr(machine, "_finalize", crash)
        with pytest.raises(SimulatedCrash):
            machine.run()

        publish_record = journal.get_step(compute_step_id("job-1", "publish"))
        assert publish_record.status == StepStatus.COMPLETED
        assert journal.get_step(compute_step_id("job-1", "finalize")) is None
        assert journal.get_outcome("job-1") is None

        outcome = make_machine(job_request).run()

        assert outcome.succeeded
        assert outcome.location == publish_record.result["location"]
        assert outcome.details["sha256"] == publish_record.result["sha256"]
        assert len(fake_encoder.invocations) == 1
        assert len(published) == 1
        steps = journal.list_steps("job-1")
        assert [s.step_name for s in steps] == ["stage", "invoke", "publish", "finalize"]
        assert all(s.status == StepStatus.COMPLETED for s in steps)
        assert make_machine(job_request).run() == outcome

    def test_crash_after_finalize_before_outcome(self, make_machine, journal, storage, job_request, fake_encoder, monkeypatch):
        real_publish = storage.publish
        published = []

        def counting_publish(*args, **kwargs):
            published.append(1)
            return real_publish(*args, **kwargs)

        def crash(*args, **kwargs):
            raise SimulatedCrash()

        real_record_outcome = journal.record_outcome
        monkeypatch.setattr(storage, "publish", counting_publish)
        monkeypatch.setattr(journal, "record_outcome", crash)
        machine = make_machine(job_request)
        with pytest.raises(SimulatedCrash):
            machine.run()
        monkeypatch.setattr(journal, "record_outcome", real_record_outcome)

        finalize = journal.get_step(compute_step_id("job-1", "finalize"))
        assert finalize.status == StepStatus.COMPLETED
        assert not machine.workdir.exists()
        assert journal.get_outcome("job-1") is None

        outcome = make_machine(job_request).run()

        publish_record = journal.get_step(compute_step_id("job-1", "publish"))
        assert outcome.succeeded
        assert outcome.location == publish_record.result["location"]
        assert outcome.details["sha256"] == publish_record.result["sha256"]
        assert len(fake_encoder.invocations) == 1
        assert len(published) == 1
        assert journal.get_step(compute_step_id("job-1", "finalize")).attempts == 1
        steps = journal.list_steps("job-1")
        assert len(steps) == 4
        assert all(s.status == StepStatus.COMPLETED for s in steps)
        assert make_machine(job_request).run() == outcome

    def test_crash_during_last_attempt(self, make_machine, runner, job_request, fake_encoder, monkeypatch):
        """A crash in the final allowed attempt still counts; the replay gives up."""
        policy = RetryPolicy(max_attempts=2, backoff_base_s=0.0, backoff_ceiling_s=0.0)
        fake_encoder.set_modes("recoverable")
        real_invoke = runner.invoke
        calls = []

        def crashing_invoke(*args, **kwargs):
            calls.append(1)
            if len(calls) == 2:
                raise SimulatedCrash()
            return real_invoke(*args, **kwargs)

        monkeypatch.setattr(runner, "invoke", crashing_invoke)
        with pytest.raises(SimulatedCrash):
            make_machine(job_request, retry_policy=policy).run()

        outcome = make_machine(job_request, retry_policy=policy).run()

        assert outcome.error_kind == ErrorKind.ENCODING
        assert "gave up after 2 attempts" in outcome.message
        assert len(calls) == 2
        assert len(fake_encoder.invocations) == 1

    def test_staged_input_lost_before_invoke(self, make_machine, journal, runner, job_request, fake_encoder, monkeypatch):
        def crash_before_encoding(*args, **kwargs):
            raise SimulatedCrash()

        monkeypatch.setattr(runner, "invoke", crash_before_encoding)
        machine = make_machine(job_request)
        with pytest.raises(SimulatedCrash):
            machine.run()
        monkeypatch.undo()

        # Working storage wiped between activations
        shutil.rmtree(machine.workdir)

        outcome = make_machine(job_request).run()
        assert outcome.error_kind == ErrorKind.STAGING
        assert fake_encoder.invocations == []


class TestRetries:
    """Retry ceiling, fatal short-circuit and backoff."""

    def test_retry_ceiling_exact(self, make_machine, journal, job_request, fake_encoder):
        fake_encoder.set_modes("recoverable")

        machine = make_machine(job_request)
        outcome = machine.run()

        assert outcome.error_kind == ErrorKind.ENCODING
        assert "gave up after 3 attempts" in outcome.message
        assert len(fake_encoder.invocations) == 3

        invoke = journal.get_step(compute_step_id("job-1", "invoke"))
        assert invoke.attempts == 3
        assert invoke.status == StepStatus.COMPLETED
        assert "publish" not in step_names(journal, "job-1")
        assert not machine.workdir.exists()

    def test_unrecognized_failure_bounded_too(self, make_machine, job_request, fake_encoder):
        fake_encoder.set_modes("unknown")
        outcome = make_machine(job_request).run()

        assert outcome.error_kind == ErrorKind.ENCODING
        assert len(fake_encoder.invocations) == 3

    def test_fatal_short_circuit(self, make_machine, journal, job_request, fake_encoder):
        fake_encoder.set_modes("fatal")
        outcome = make_machine(job_request).run()

        assert outcome.error_kind == ErrorKind.ENCODING
        assert "Invalid data found" in outcome.message
        assert len(fake_encoder.invocations) == 1
        assert journal.get_step(compute_step_id("job-1", "invoke")).attempts == 1

    def test_no_output_is_fatal(self, make_machine, job_request, fake_encoder):
        fake_encoder.set_modes("no-output")
        outcome = make_machine(job_request).run()

        assert outcome.error_kind == ErrorKind.ENCODING
        assert "without producing output" in outcome.message
        assert len(fake_encoder.invocations) == 1

    def test_recoverable_then_success(self, make_machine, journal, job_request, fake_encoder):
        fake_encoder.set_modes("recoverable", "success")
        outcome = make_machine(job_request).run()

        assert outcome.succeeded
        assert len(fake_encoder.invocations) == 2
        assert journal.get_step(compute_step_id("job-1", "invoke")).attempts == 2

    def test_missing_source_fails_staging(self, make_machine, journal, tmp_path, fake_encoder):
        request = ProcessingRequest(key="job-3", source=str(tmp_path / "missing.mp4"))
        outcome = make_machine(request).run()

        assert outcome.error_kind == ErrorKind.STAGING
        assert step_names(journal, "job-3") == ["stage"]
        assert fake_encoder.invocations == []

    def test_staging_exhaustion(self, make_machine, storage, job_request, monkeypatch):
        calls = []

        def flaky_fetch(source, dest_dir):
            calls.append(source)
            raise StepFailure(ErrorKind.STAGING, "GET timed out", recoverable=True)

        monkeypatch.setattr(storage, "fetch", flaky_fetch)
        outcome = make_machine(job_request).run()

        assert outcome.error_kind == ErrorKind.STAGING
        assert len(calls) == 3

    def test_publishing_exhaustion(self, make_machine, storage, job_request, fake_encoder, monkeypatch):
        def failing_publish(path, destination, name):
            raise OSError("read-only file system")

        monkeypatch.setattr(storage, "publish", failing_publish)
        outcome = make_machine(job_request).run()

        assert outcome.error_kind == ErrorKind.PUBLISHING
        assert "read-only file system" in outcome.message
        assert len(fake_encoder.invocations) == 1

    def test_short_backoff_waits_in_process(self, make_machine, job_request, fake_encoder):
        policy = RetryPolicy(
            max_attempts=3, backoff_base_s=0.3, backoff_ceiling_s=0.3,
            suspend_threshold_s=30.0, rng=MaxJitter(),
        )
        fake_encoder.set_modes("recoverable", "success")

        start = time.monotonic()
        outcome = make_machine(job_request, retry_policy=policy).run()

        assert outcome.succeeded
        assert time.monotonic() - start >= 0.3


class TestRetryPolicy:
    """Test backoff arithmetic."""

    def test_full_jitter_bounds(self):
        policy = RetryPolicy(backoff_base_s=1.0, backoff_ceiling_s=60.0, rng=MaxJitter())
        assert policy.backoff(1) == 1.0
        assert policy.backoff(2) == 2.0
        assert policy.backoff(4) == 8.0
        assert policy.backoff(20) == 60.0

    def test_jitter_in_range(self):
        policy = RetryPolicy(backoff_base_s=1.0, backoff_ceiling_s=4.0, rng=random.Random(7))
        for attempts in range(1, 10):
            assert 0.0 <= policy.backoff(attempts) <= 4.0

    def test_exhausted(self):
        policy = RetryPolicy(max_attempts=3)
        assert not policy.exhausted(2)
        assert policy.exhausted(3)


class TestSuspension:
    """Long backoffs become durable timers."""

    def policy(self):
        return RetryPolicy(
            max_attempts=3, backoff_base_s=120.0, backoff_ceiling_s=120.0,
            suspend_threshold_s=30.0, rng=MaxJitter(),
        )

    def test_suspend_and_resume(self, make_machine, journal, job_request, fake_encoder):
        fake_encoder.set_modes("recoverable", "success")

        with pytest.raises(SuspendRequested) as exc_info:
            make_machine(job_request, retry_policy=self.policy()).run()

        suspended = exc_info.value
        assert suspended.reason == "invoke retry backoff"
        remaining = (suspended.resume_after - utcnow()).total_seconds()
        assert 100 < remaining <= 120
        assert journal.get_outcome("job-1") is None

        # Too early: the durable timer is honored, nothing runs
        with pytest.raises(SuspendRequested) as again:
            make_machine(job_request, retry_policy=self.policy()).run()
        assert again.value.resume_after == suspended.resume_after
        assert len(fake_encoder.invocations) == 1

        journal.set_resume_after(compute_step_id("job-1", "invoke"), utcnow() - timedelta(seconds=1))
        outcome = make_machine(job_request, retry_policy=self.policy()).run()

        assert outcome.succeeded
        assert len(fake_encoder.invocations) == 2

    def test_different_parameters_while_suspended(self, make_machine, journal, job_request, fake_encoder):
        fake_encoder.set_modes("recoverable")
        with pytest.raises(SuspendRequested):
            make_machine(job_request, retry_policy=self.policy()).run()

        changed = ProcessingRequest(key="job-1", source=job_request.source, output={"bitrate": "4M"})
        outcome = make_machine(changed, retry_policy=self.policy()).run()

        assert outcome.error_kind == ErrorKind.VALIDATION
        assert "different parameters" in outcome.message
        assert journal.get_outcome("job-1") is None

    def test_stop_event_suspends_without_outcome(self, make_machine, journal, job_request, fake_encoder):
        stop_event = threading.Event()
        stop_event.set()

        with pytest.raises(SuspendRequested, match="shutting down"):
            make_machine(job_request, stop_event=stop_event).run()

        assert journal.get_outcome("job-1") is None
        assert fake_encoder.invocations == []


class TestCancellation:
    """Cancellation ends the job as Failed(Cancelled)."""

    def test_cancelled_before_start(self, make_machine, journal, job_request, fake_encoder):
        cancel_event = threading.Event()
        cancel_event.set()

        outcome = make_machine(job_request, cancel_event=cancel_event).run()

        assert outcome.error_kind == ErrorKind.CANCELLED
        assert journal.get_outcome("job-1")["error_kind"] == "Cancelled"
        assert fake_encoder.invocations == []

    def test_cancel_during_encoding(self, make_machine, journal, runner, job_request, fake_encoder):
        fake_encoder.set_modes("hang")
        cancel_event = threading.Event()
        machine = make_machine(job_request, cancel_event=cancel_event)
        outcomes = []
        worker = threading.Thread(target=lambda: outcomes.append(machine.run()))
        worker.start()

        pid = fake_encoder.wait_for_invocations(1)[0]["pid"]
        cancelled_at = time.monotonic()
        cancel_event.set()
        worker.join(timeout=10)

        assert not worker.is_alive()
        assert time.monotonic() - cancelled_at < 5
        assert outcomes[0].error_kind == ErrorKind.CANCELLED
        assert not psutil.pid_exists(pid)
        assert len(runner.registry) == 0
        invoke = journal.get_step(compute_step_id("job-1", "invoke"))
        assert invoke.status == StepStatus.FAILED
        assert invoke.error_kind == "Cancelled"

    def test_cancel_during_backoff(self, make_machine, job_request, fake_encoder):
        policy = RetryPolicy(
            max_attempts=3, backoff_base_s=10.0, backoff_ceiling_s=10.0,
            suspend_threshold_s=30.0, rng=MaxJitter(),
        )
        fake_encoder.set_modes("recoverable")
        cancel_event = threading.Event()
        threading.Timer(0.5, cancel_event.set).start()

        start = time.monotonic()
        outcome = make_machine(job_request, retry_policy=policy, cancel_event=cancel_event).run()

        assert outcome.error_kind == ErrorKind.CANCELLED
        assert time.monotonic() - start < 8
        assert len(fake_encoder.invocations) == 1

    def test_cancel_refused_once_publishing(self, make_machine, journal, storage, job_request, fake_encoder, monkeypatch):
        machine = make_machine(job_request)
        real_publish = storage.publish
        answers = []

        def publish_then_cancel(*args, **kwargs):
            answers.append(machine.cancel())
            return real_publish(*args, **kwargs)

        monkeypatch.setattr(storage, "publish", publish_then_cancel)
        outcome = machine.run()

        assert answers == [False]
        assert outcome.succeeded
        assert not machine.cancel_event.is_set()
        assert journal.get_outcome("job-1")["status"] == "completed"

    def test_cancel_accepted_before_publishing_is_honored(self, make_machine, journal, storage, runner, job_request, fake_encoder, monkeypatch):
        machine = make_machine(job_request)
        real_invoke = runner.invoke
        real_publish = storage.publish
        answers = []
        published = []

        def invoke_then_cancel(*args, **kwargs):
            result = real_invoke(*args, **kwargs)
            answers.append(machine.cancel())
            return result

        def counting_publish(*args, **kwargs):
            published.append(1)
            return real_publish(*args, **kwargs)

        monkeypatch.setattr(runner, "invoke", invoke_then_cancel)
        monkeypatch.setattr(storage, "publish", counting_publish)
        outcome = machine.run()

        assert answers == [True]
        assert outcome.error_kind == ErrorKind.CANCELLED
        assert published == []
        assert JobState.PUBLISHING in machine.history
        assert journal.get_step(compute_step_id("job-1", "publish")) is None

    def test_cancel_after_outcome_refused(self, make_machine, job_request, fake_encoder):
        machine = make_machine(job_request)
        assert machine.run().succeeded

        assert machine.cancel() is False
        assert not machine.cancel_event.is_set()


class TestFinalize:
    """Cleanup never downgrades success."""

    def test_cleanup_failure_keeps_success(self, make_machine, journal, job_request, monkeypatch):
        monkeypatch.setattr(
            "durable_ffmpeg.state_machine.remove_tree", lambda path: "permission denied"
        )
        outcome = make_machine(job_request).run()

        assert outcome.succeeded
        finalize = journal.get_step(compute_step_id("job-1", "finalize"))
        assert finalize.result == {"removed": False, "error": "permission denied"}
