"""FFmpeg runner with process isolation, timeout enforcement, and progress monitoring.

This module turns one encoder invocation into an InvocationResult:
- Builds the ffmpeg argument list from a request's OutputOptions
- Waits for an admission slot so the host never runs more than the
  configured number of encoders
- Spawns exactly one child per invocation, registered in the ProcessRegistry
- Streams stderr line by line, parsing ``-progress pipe:2`` output
- Enforces a wall-clock limit, a no-progress stall timeout and POSIX
  memory/CPU ceilings
- Terminates the process tree on timeout, cancellation or any exception, and
  always reaps it
- Classifies the exit through the ordered table in ``classification``

One runner is shared by all requests; all per-invocation state lives on the
stack of ``invoke()``.
"""

import logging
import os
import re
import shutil
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Deque, Iterable, List, Optional, Tuple

import imageio_ffmpeg
import psutil

from .admission import AdmissionGate
from .classification import Classification, classify
from .errors import Cancelled, diagnostic_excerpt
from .jobs import AudioCodec, OutputOptions, VideoCodec
from .models import EncoderConfig
from .process_registry import ProcessRegistry, terminate_process_tree

logger = logging.getLogger(__name__)

TAIL_LINES = 200

_OUT_TIME_RE = re.compile(r"out_time=(\d+):(\d+):(\d+(?:\.\d+)?)")
_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")
_FRAME_RE = re.compile(r"frame=\s*(\d+)")
_FPS_RE = re.compile(r"fps=\s*([\d.]+)")
_BITRATE_RE = re.compile(r"bitrate=\s*([\d.]+)kbits/s")
_SPEED_RE = re.compile(r"speed=\s*([\d.]+)x")
_ERROR_MARKER_RE = re.compile(r"\berror\b|\binvalid\b|\bfailed\b", re.IGNORECASE)
_PROGRESS_KEYS = (
    "frame=", "fps=", "stream_", "bitrate=", "total_size=", "out_time",
    "dup_frames=", "drop_frames=", "speed=", "progress=",
)


@dataclass
class EncoderProgress:
    """Real-time encoder progress metrics."""
    current_time_s: float = 0.0      # Output position in seconds
    total_duration_s: float = 0.0    # Input duration from the banner, if seen
    fps: float = 0.0
    bitrate_kbps: float = 0.0
    speed: float = 0.0               # Processing speed multiplier (e.g. 2.5x)
    frame: int = 0
    last_update: float = 0.0         # time.monotonic() of last progress line
    finished: bool = False           # ffmpeg printed progress=end
    last_error: Optional[str] = None

    @property
    def percent(self) -> Optional[float]:
        if self.total_duration_s <= 0:
            return None
        return min(100.0, 100.0 * self.current_time_s / self.total_duration_s)


@dataclass
class InvocationResult:
    """Result of one encoder invocation. Not persisted."""
    returncode: int
    classification: Classification
    reason: str
    stderr_excerpt: str
    duration_s: float
    progress: EncoderProgress = field(default_factory=EncoderProgress)
    command: List[str] = field(default_factory=list)
    pid: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.classification == Classification.SUCCESS


def resolve_encoder_binary(configured: Optional[str] = None) -> str:
    """Configured path, else ffmpeg on PATH, else imageio-ffmpeg's bundled binary."""
    if configured:
        return configured
    on_path = shutil.which("ffmpeg")
    if on_path:
        return on_path
    return imageio_ffmpeg.get_ffmpeg_exe()


def resolve_probe_binary(configured: Optional[str] = None, encoder: Optional[str] = None) -> str:
    """Configured path, else ffprobe on PATH, else the sibling of the encoder binary."""
    if configured:
        return configured
    on_path = shutil.which("ffprobe")
    if on_path:
        return on_path
    encoder = encoder or resolve_encoder_binary()
    encoder_path = Path(encoder)
    return str(encoder_path.with_name(encoder_path.name.replace("ffmpeg", "ffprobe")))


def check_encoder(binary: str, timeout_s: float = 10.0) -> bool:
    """Verify the encoder binary exists and runs."""
    try:
        subprocess.run(
            [binary, "-version"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
            timeout=timeout_s,
        )
        return True
    except (FileNotFoundError, subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError):
        return False


def _apply_resource_limits(
    pid: int, memory_limit_mb: Optional[int], cpu_time_limit_s: Optional[int]
) -> None:
    """Set memory and CPU ceilings on a running encoder (prlimit via psutil).

    Applied from the parent right after spawn; a ``preexec_fn`` is not safe
    while other threads exist.
    """
    if not (memory_limit_mb or cpu_time_limit_s):
        return
    if not hasattr(psutil.Process, "rlimit"):
        logger.warning("resource limits are not supported on this platform; pid=%s runs unlimited", pid)
        return

    try:
        process = psutil.Process(pid)
        if memory_limit_mb:
            limit = memory_limit_mb * 1024 * 1024
            process.rlimit(psutil.RLIMIT_AS, (limit, limit))
        if cpu_time_limit_s:
            # Soft limit raises SIGXCPU, hard limit SIGKILLs shortly after
            process.rlimit(psutil.RLIMIT_CPU, (cpu_time_limit_s, cpu_time_limit_s + 5))
    except psutil.NoSuchProcess:
        logger.debug("encoder pid=%s exited before limits were applied", pid)


class FfmpegRunner:
    """Encoder invocation adapter.

    Example:
        >>> registry = ProcessRegistry()
        >>> runner = FfmpegRunner(registry=registry, gate=AdmissionGate(2))
        >>> result = runner.invoke("in.mp4", OutputOptions(bitrate="2M"), "out.mp4")
        >>> result.classification
        <Classification.SUCCESS: 'success'>
    """

    def __init__(
        self,
        binary_path: Optional[str] = None,
        registry: Optional[ProcessRegistry] = None,
        gate: Optional[AdmissionGate] = None,
        time_limit_s: float = 3600.0,
        no_progress_timeout_s: float = 300.0,
        kill_grace_period_s: float = 5.0,
        memory_limit_mb: Optional[int] = None,
        cpu_time_limit_s: Optional[int] = None,
        ffmpeg_loglevel: str = "info",
        excerpt_limit: int = 2000,
        poll_interval_s: float = 0.1,
        callback_interval_s: float = 2.0,
        progress_callback: Optional[Callable[[EncoderProgress], None]] = None,
    ):
        """Initialize the runner.

        Args:
            binary_path: ffmpeg executable (resolved lazily when None)
            registry: Registry that tracks live children for shutdown
            gate: Admission gate bounding concurrent encoders
            time_limit_s: Maximum wall-clock duration of one invocation
            no_progress_timeout_s: Kill if no progress line in N seconds
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            memory_limit_mb: RLIMIT_AS for the child (POSIX only)
            cpu_time_limit_s: RLIMIT_CPU for the child (POSIX only)
            ffmpeg_loglevel: ffmpeg log level (error, warning, info, verbose)
            excerpt_limit: Max characters of stderr kept in results
            poll_interval_s: How often the wait loop checks limits and cancellation
            callback_interval_s: Minimum seconds between progress callbacks
            progress_callback: Default callback for progress updates
        """
        self._binary_path = binary_path
        self.registry = registry or ProcessRegistry(grace_period_s=kill_grace_period_s)
        self.gate = gate or AdmissionGate(1)
        self.time_limit_s = time_limit_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.memory_limit_mb = memory_limit_mb
        self.cpu_time_limit_s = cpu_time_limit_s
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.excerpt_limit = excerpt_limit
        self.poll_interval_s = poll_interval_s
        self.callback_interval_s = callback_interval_s
        self.progress_callback = progress_callback

    @classmethod
    def from_config(
        cls,
        config: EncoderConfig,
        registry: ProcessRegistry,
        gate: AdmissionGate,
        progress_callback: Optional[Callable[[EncoderProgress], None]] = None,
    ) -> "FfmpegRunner":
        return cls(
            binary_path=config.binary_path,
            registry=registry,
            gate=gate,
            time_limit_s=config.time_limit_s,
            no_progress_timeout_s=config.no_progress_timeout_s,
            kill_grace_period_s=config.kill_grace_period_s,
            memory_limit_mb=config.memory_limit_mb,
            cpu_time_limit_s=config.cpu_time_limit_s,
            ffmpeg_loglevel=config.loglevel,
            excerpt_limit=config.excerpt_limit,
            progress_callback=progress_callback,
        )

    @property
    def binary(self) -> str:
        if self._binary_path is None:
            self._binary_path = resolve_encoder_binary()
        return self._binary_path

    def build_command(
        self,
        input_path: str,
        options: OutputOptions,
        output_path: str,
    ) -> List[str]:
        """Build the ffmpeg argument list for one request."""
        cmd = [
            self.binary,
            "-nostdin",
            "-y",  # Overwrite partial output from an earlier attempt
            "-hide_banner",
            "-i", str(input_path),
            "-c:v", options.codec.encoder_name,
        ]

        if options.codec != VideoCodec.COPY:
            if options.bitrate:
                cmd.extend(["-b:v", options.bitrate])
            if options.crf is not None:
                cmd.extend(["-crf", str(options.crf)])
            if options.preset:
                cmd.extend(["-preset", options.preset])
            if options.filters:
                cmd.extend(["-vf", ",".join(options.filters)])

        if options.audio_codec == AudioCodec.NONE:
            cmd.append("-an")
        else:
            cmd.extend(["-c:a", options.audio_codec.encoder_name])

        cmd.extend(options.extra_args)

        cmd.extend([
            "-progress", "pipe:2",  # Progress to stderr
            "-loglevel", self.ffmpeg_loglevel,
            str(output_path),
        ])
        return cmd

    def invoke(
        self,
        input_path: str,
        options: OutputOptions,
        output_path: str,
        cancel_event: Optional[threading.Event] = None,
        cwd: Optional[str] = None,
        progress_callback: Optional[Callable[[EncoderProgress], None]] = None,
    ) -> InvocationResult:
        """Run the encoder once for ``input_path`` -> ``output_path``.

        Waits for an admission slot first. Cancellation while waiting returns a
        CANCELLED result without spawning anything.
        """
        cmd = self.build_command(input_path, options, output_path)
        callback = progress_callback or self.progress_callback

        try:
            with self.gate.admit(cancel_event):
                return self.run_command(cmd, cwd=cwd, cancel_event=cancel_event, progress_callback=callback)
        except Cancelled:
            return InvocationResult(
                returncode=-1,
                classification=Classification.CANCELLED,
                reason="cancelled before start",
                stderr_excerpt="",
                duration_s=0.0,
                command=cmd,
            )

    def run_command(
        self,
        cmd: List[str],
        cwd: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[Callable[[EncoderProgress], None]] = None,
    ) -> InvocationResult:
        """Execute an encoder command with limits and progress monitoring.

        The caller is responsible for admission; ``invoke()`` does that.
        """
        start_time = time.monotonic()
        progress = EncoderProgress()
        tail: Deque[str] = deque(maxlen=TAIL_LINES)

        process = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
            bufsize=1,  # Line buffered for real-time progress
            cwd=cwd,
            start_new_session=(os.name == "posix"),
        )
        logger.info("encoder started pid=%s cmd=%s", process.pid, " ".join(cmd))

        stop_reason: Optional[str] = None
        try:
            with self.registry.track(process):
                _apply_resource_limits(process.pid, self.memory_limit_mb, self.cpu_time_limit_s)
                monitor = threading.Thread(
                    target=self._monitor_progress,
                    args=(process.stderr, progress, tail, progress_callback),
                    daemon=True,
                )
                monitor.start()

                returncode, stop_reason = self._wait(process, start_time, progress, cancel_event)

                monitor.join(timeout=2)
        except BaseException:
            # Unexpected error or interpreter shutdown: never leave the child behind
            terminate_process_tree(process, self.kill_grace_period_s)
            raise
        finally:
            if process.stderr:
                try:
                    process.stderr.close()
                except OSError:
                    pass

        duration = time.monotonic() - start_time
        stderr_text = "\n".join(tail)

        if stop_reason == "cancelled":
            classification, reason = Classification.CANCELLED, "cancelled"
        elif stop_reason is not None:
            classification, reason = Classification.RECOVERABLE, stop_reason
        else:
            classification, reason = classify(returncode, stderr_text)

        log = logger.info if classification == Classification.SUCCESS else logger.warning
        log(
            "encoder finished pid=%s returncode=%s classification=%s reason=%s duration=%.1fs",
            process.pid, returncode, classification.value, reason, duration,
        )

        return InvocationResult(
            returncode=returncode,
            classification=classification,
            reason=reason,
            stderr_excerpt=diagnostic_excerpt(stderr_text, self.excerpt_limit),
            duration_s=duration,
            progress=progress,
            command=cmd,
            pid=process.pid,
        )

    def _wait(
        self,
        process: subprocess.Popen,
        start_time: float,
        progress: EncoderProgress,
        cancel_event: Optional[threading.Event],
    ) -> Tuple[int, Optional[str]]:
        """Poll the child until it exits or a limit/cancellation stops it."""
        while True:
            try:
                return process.wait(timeout=self.poll_interval_s), None
            except subprocess.TimeoutExpired:
                pass

            now = time.monotonic()
            if cancel_event is not None and cancel_event.is_set():
                reason = "cancelled"
            elif now - start_time > self.time_limit_s:
                reason = f"time limit exceeded ({self.time_limit_s:.0f}s)"
            elif now - max(start_time, progress.last_update) > self.no_progress_timeout_s:
                reason = f"no progress for {self.no_progress_timeout_s:.0f}s"
            else:
                continue

            logger.warning("stopping encoder pid=%s: %s", process.pid, reason)
            return terminate_process_tree(process, self.kill_grace_period_s), reason

    def _monitor_progress(
        self,
        stderr_stream: Iterable[str],
        progress: EncoderProgress,
        tail: Optional[Deque[str]] = None,
        progress_callback: Optional[Callable[[EncoderProgress], None]] = None,
    ) -> None:
        """Parse encoder stderr into ``progress`` and keep a diagnostic tail.

        ffmpeg ``-progress`` format (one key per line):
            frame=123
            fps=25.00
            bitrate=1234.5kbits/s
            out_time=00:00:05.123456
            speed=2.5x
            progress=continue
        Everything that is not a progress key goes to ``tail``.
        """
        last_callback = 0.0

        try:
            for raw in stderr_stream:
                line = raw.rstrip()
                if not line:
                    continue

                if line.startswith(_PROGRESS_KEYS):
                    self._parse_progress_line(line, progress)
                else:
                    if tail is not None:
                        tail.append(line)
                    match = _DURATION_RE.search(line)
                    if match and progress.total_duration_s == 0.0:
                        h, m, s = match.groups()
                        progress.total_duration_s = int(h) * 3600 + int(m) * 60 + float(s)
                    if _ERROR_MARKER_RE.search(line):
                        progress.last_error = line

                now = time.monotonic()
                if progress_callback and (
                    progress.finished or now - last_callback >= self.callback_interval_s
                ):
                    try:
                        progress_callback(progress)
                        last_callback = now
                    except Exception as e:
                        logger.warning("progress callback failed: %s", e)
        except (ValueError, OSError) as e:
            # Stream closed under us after the process was killed
            logger.debug("progress monitoring stopped: %s", e)

    @staticmethod
    def _parse_progress_line(line: str, progress: EncoderProgress) -> None:
        if line.startswith("out_time="):
            match = _OUT_TIME_RE.match(line)
            if match:
                h, m, s = match.groups()
                progress.current_time_s = int(h) * 3600 + int(m) * 60 + float(s)
                progress.last_update = time.monotonic()
            return

        if line.startswith("progress="):
            progress.last_update = time.monotonic()
            progress.finished = line == "progress=end"
            return

        for pattern, attr, cast in (
            (_FRAME_RE, "frame", int),
            (_FPS_RE, "fps", float),
            (_BITRATE_RE, "bitrate_kbps", float),
            (_SPEED_RE, "speed", float),
        ):
            match = pattern.match(line)
            if match:
                setattr(progress, attr, cast(match.group(1)))
                return
