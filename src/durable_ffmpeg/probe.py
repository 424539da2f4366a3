"""Media inspection with ffprobe."""

import json
import logging
import subprocess
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import EncodingError, TransientEncodingError, diagnostic_excerpt

logger = logging.getLogger(__name__)


class ProbeRequest(BaseModel):
    """Which media to inspect and which sections to return."""

    model_config = ConfigDict(frozen=True)

    input: str = Field(..., min_length=1, description="Path or URL readable by ffprobe")
    key: Optional[str] = Field(
        default=None,
        min_length=1,
        description="Idempotency key; only keyed probes are journaled and replayed",
    )
    show_format: bool = Field(default=True)
    show_streams: bool = Field(default=True)


class ProbeStream(BaseModel):
    """One stream as reported by ffprobe. Unlisted keys are kept."""

    model_config = ConfigDict(extra="allow")

    index: int = 0
    codec_type: Optional[str] = None
    codec_name: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    pix_fmt: Optional[str] = None
    r_frame_rate: Optional[str] = None  # Declared frame rate (e.g. "60/1")
    avg_frame_rate: Optional[str] = None  # Actual average (e.g. "1349280/22481")
    sample_rate: Optional[str] = None
    channels: Optional[int] = None
    duration: Optional[str] = None


class ProbeFormat(BaseModel):
    """Container-level information. Unlisted keys are kept."""

    model_config = ConfigDict(extra="allow")

    filename: Optional[str] = None
    format_name: Optional[str] = None
    duration: Optional[str] = None
    size: Optional[str] = None
    bit_rate: Optional[str] = None
    nb_streams: Optional[int] = None


class ProbeResponse(BaseModel):
    format: Optional[ProbeFormat] = None
    streams: List[ProbeStream] = Field(default_factory=list)

    @property
    def duration_s(self) -> Optional[float]:
        if self.format is None or self.format.duration is None:
            return None
        try:
            return float(self.format.duration)
        except ValueError:
            return None

    @property
    def video_stream(self) -> Optional[ProbeStream]:
        return next((s for s in self.streams if s.codec_type == "video"), None)

    @property
    def fps(self) -> Optional[float]:
        stream = self.video_stream
        if stream is None or not stream.avg_frame_rate:
            return None
        return fraction_to_float(stream.avg_frame_rate)


def fraction_to_float(rate: str) -> float:
    """Convert '60/1' or '1349280/22481' to float."""
    try:
        num, denom = rate.split("/")
        return float(num) / float(denom) if float(denom) != 0 else 0.0
    except ValueError:
        return 0.0


def build_probe_command(binary: str, request: ProbeRequest) -> List[str]:
    cmd = [binary, "-v", "quiet", "-print_format", "json"]
    if request.show_format:
        cmd.append("-show_format")
    if request.show_streams:
        cmd.append("-show_streams")
    cmd.append(request.input)
    return cmd


def run_ffprobe(
    request: ProbeRequest,
    binary: str,
    timeout_s: float = 30.0,
    excerpt_limit: int = 2000,
) -> ProbeResponse:
    """Probe media using ffprobe.

    Args:
        request: What to probe
        binary: ffprobe executable
        timeout_s: Kill ffprobe after this many seconds
        excerpt_limit: Max characters of diagnostics in error messages

    Returns:
        ProbeResponse with the requested sections

    Raises:
        EncodingError: ffprobe rejected the input or printed invalid JSON
        TransientEncodingError: ffprobe could not be started or timed out

    Example:
        >>> info = run_ffprobe(ProbeRequest(input="gameplay.mp4"), "ffprobe")
        >>> print(f"{info.duration_s:.1f}s at {info.fps:.2f} fps")
    """
    cmd = build_probe_command(binary, request)
    logger.debug("probing %s", request.input)

    try:
        result = subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout_s,
        )
    except subprocess.TimeoutExpired as e:
        raise TransientEncodingError(f"ffprobe timed out after {timeout_s:.0f}s") from e
    except OSError as e:
        raise TransientEncodingError(f"ffprobe could not be started: {e}") from e

    if result.returncode != 0:
        detail = diagnostic_excerpt(result.stderr or result.stdout, excerpt_limit)
        raise EncodingError(
            f"ffprobe failed on {request.input} (exit {result.returncode}): {detail}".rstrip(": ")
        )

    try:
        data = json.loads(result.stdout or "{}")
    except json.JSONDecodeError as e:
        raise EncodingError(f"ffprobe output parsing failed: {e}") from e

    return ProbeResponse.model_validate(data)
