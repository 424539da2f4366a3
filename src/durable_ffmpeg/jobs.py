"""Request and outcome models exchanged with the orchestrator.

A ProcessingRequest is immutable once accepted. A JobOutcome is created once per
request key, when the state machine terminates, and is replayed verbatim to any
later call with the same key. A SuspendSignal tells the orchestrator to come
back later with the same key.
"""

import hashlib
import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import ErrorKind, ValidationError

SUPPORTED_SOURCE_SCHEMES = ("", "file", "http", "https", "s3")
SUPPORTED_DESTINATION_SCHEMES = ("", "file", "s3")

# Flags the service owns; a request may not pass them through extra_args
RESERVED_ARGS = frozenset({"-i", "-y", "-n", "-nostdin", "-progress", "-loglevel", "-v"})

_BITRATE_RE = re.compile(r"^\d+(\.\d+)?[kKmM]?$")
_SAFE_KEY_RE = re.compile(r"[^A-Za-z0-9._-]")


class ContainerFormat(str, Enum):
    MP4 = "mp4"
    MKV = "mkv"
    MOV = "mov"
    WEBM = "webm"

    @property
    def extension(self) -> str:
        return self.value


class VideoCodec(str, Enum):
    H264 = "h264"
    H265 = "h265"
    VP9 = "vp9"
    AV1 = "av1"
    COPY = "copy"

    @property
    def encoder_name(self) -> str:
        return {
            VideoCodec.H264: "libx264",
            VideoCodec.H265: "libx265",
            VideoCodec.VP9: "libvpx-vp9",
            VideoCodec.AV1: "libaom-av1",
            VideoCodec.COPY: "copy",
        }[self]


class AudioCodec(str, Enum):
    AAC = "aac"
    OPUS = "opus"
    MP3 = "mp3"
    COPY = "copy"
    NONE = "none"

    @property
    def encoder_name(self) -> Optional[str]:
        return {
            AudioCodec.AAC: "aac",
            AudioCodec.OPUS: "libopus",
            AudioCodec.MP3: "libmp3lame",
            AudioCodec.COPY: "copy",
            AudioCodec.NONE: None,
        }[self]


class OutputOptions(BaseModel):
    """Enumerated output configuration for one request."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    container: ContainerFormat = Field(default=ContainerFormat.MP4, description="Container format")
    codec: VideoCodec = Field(default=VideoCodec.H264, description="Video codec")
    audio_codec: AudioCodec = Field(default=AudioCodec.AAC, description="Audio codec")
    bitrate: Optional[str] = Field(default=None, description="Target video bitrate, e.g. '2M'")
    crf: Optional[int] = Field(default=None, ge=0, le=63, description="Constant quality factor")
    preset: Optional[str] = Field(default=None, description="Encoder speed preset")
    filters: List[str] = Field(default_factory=list, description="Video filter chain (-vf)")
    extra_args: List[str] = Field(default_factory=list, description="Additional encoder args")
    destination: Optional[str] = Field(
        default=None, description="Publish URI (directory or s3://bucket/prefix/)"
    )

    @field_validator("bitrate")
    @classmethod
    def bitrate_format(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not _BITRATE_RE.match(v):
            raise ValueError(f"bitrate must look like '2M' or '800k', got {v!r}")
        return v

    @field_validator("extra_args")
    @classmethod
    def no_reserved_args(cls, v: List[str]) -> List[str]:
        reserved = sorted(set(v) & RESERVED_ARGS)
        if reserved:
            raise ValueError(f"extra_args may not contain {', '.join(reserved)}")
        return v

    @model_validator(mode="after")
    def codec_fits_container(self) -> "OutputOptions":
        if self.container == ContainerFormat.WEBM and self.codec not in (
            VideoCodec.VP9,
            VideoCodec.AV1,
            VideoCodec.COPY,
        ):
            raise ValueError(f"webm cannot carry {self.codec.value}")
        if self.codec == VideoCodec.COPY and self.filters:
            raise ValueError("filters cannot be combined with stream copy")
        return self


class ProcessingRequest(BaseModel):
    """One transcoding job as handed over by the orchestrator."""

    model_config = ConfigDict(frozen=True)

    key: str = Field(default="", description="Unique request key (idempotency key)")
    source: Optional[str] = Field(default=None, description="Source URI or path")
    output: OutputOptions = Field(default_factory=OutputOptions)
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Caller-supplied metadata")


def validate_request(request: ProcessingRequest) -> None:
    """Check request shape before any journaled work happens.

    Raises:
        ValidationError: If the key is empty or the source is not resolvable
    """
    if not request.key or not request.key.strip():
        raise ValidationError("request key must be non-empty")
    if len(request.key) > 256:
        raise ValidationError("request key must be at most 256 characters")

    if not request.source or not request.source.strip():
        raise ValidationError("request is missing a source reference")

    parsed = urlparse(request.source)
    scheme = parsed.scheme.lower()
    # Windows drive letters parse as one-letter schemes
    if len(scheme) == 1:
        scheme = ""
    if scheme not in SUPPORTED_SOURCE_SCHEMES:
        raise ValidationError(f"unsupported source scheme: {parsed.scheme}")
    if scheme in ("http", "https") and not parsed.netloc:
        raise ValidationError(f"source URL has no host: {request.source}")
    if scheme == "s3" and (not parsed.netloc or not parsed.path.strip("/")):
        raise ValidationError(f"s3 source must be s3://bucket/key: {request.source}")
    if scheme == "file" and not parsed.path:
        raise ValidationError(f"file source has no path: {request.source}")

    destination = request.output.destination
    if destination:
        dest = urlparse(destination)
        dest_scheme = "" if len(dest.scheme) == 1 else dest.scheme.lower()
        if dest_scheme not in SUPPORTED_DESTINATION_SCHEMES:
            raise ValidationError(f"unsupported destination scheme: {dest.scheme}")
        if dest_scheme == "s3" and not dest.netloc:
            raise ValidationError(f"s3 destination must name a bucket: {destination}")


def safe_key(key: str) -> str:
    """Filesystem-safe namespace for a request key.

    Keys that need rewriting get a short digest suffix so two different keys
    never share a working directory.
    """
    cleaned = _SAFE_KEY_RE.sub("_", key)
    if cleaned != key or cleaned in (".", ".."):
        digest = hashlib.sha256(key.encode()).hexdigest()[:8]
        cleaned = f"{cleaned}-{digest}"
    return cleaned


def output_name(request: ProcessingRequest) -> str:
    """Descriptor of the published artifact, e.g. ``out-job-1.mp4``."""
    return f"out-{safe_key(request.key)}.{request.output.container.extension}"


class JobOutcome(BaseModel):
    """Terminal result of one request."""

    request_key: str
    status: Literal["completed", "failed"]
    output_descriptor: Optional[str] = None
    location: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def completed(
        cls, request_key: str, output_descriptor: str, location: Optional[str] = None, **details
    ) -> "JobOutcome":
        return cls(
            request_key=request_key,
            status="completed",
            output_descriptor=output_descriptor,
            location=location,
            details=details,
        )

    @classmethod
    def failed(cls, request_key: str, error_kind: ErrorKind, message: str) -> "JobOutcome":
        return cls(request_key=request_key, status="failed", error_kind=error_kind, message=message)

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"


class SuspendSignal(BaseModel):
    """Tells the orchestrator to re-invoke the same key later."""

    request_key: str
    resume_after: datetime
    reason: str
    suspended: Literal[True] = True

    @classmethod
    def after_seconds(cls, request_key: str, seconds: float, reason: str) -> "SuspendSignal":
        return cls(
            request_key=request_key,
            resume_after=datetime.now(timezone.utc) + timedelta(seconds=max(seconds, 0.0)),
            reason=reason,
        )
