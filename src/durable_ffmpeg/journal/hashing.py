"""Deterministic identifiers and content hashes for the step journal.

Step ids must be recomputable on replay from nothing but the request key and
the step name, so they are derived by hashing, never generated randomly.
"""

import hashlib
import json
import os
from typing import Any


def compute_step_id(request_key: str, step_name: str) -> str:
    """Derive the journal id of one step.

    Args:
        request_key: The request's idempotency key
        step_name: Step name (stage, invoke, publish, finalize, probe)

    Returns:
        ``"<step_name>-<32 hex chars>"``; the same inputs always give the same id
    """
    digest = hashlib.sha256(f"{request_key}\0{step_name}".encode()).hexdigest()
    return f"{step_name}-{digest[:32]}"


def compute_request_hash(request: Any) -> str:
    """Compute deterministic hash of a request (or any pydantic model / dict).

    Serializes with sorted keys so field order never changes the digest. Used
    to detect a key being reused with different parameters.
    """
    if hasattr(request, "model_dump"):
        data = request.model_dump(mode="json")
    else:
        data = request

    payload = json.dumps(data, sort_keys=True, indent=None, default=str)
    return hashlib.sha256(payload.encode()).hexdigest()


def compute_output_hash(file_path: str) -> str:
    """Compute SHA-256 hash of a produced artifact.

    Raises:
        FileNotFoundError: If the file doesn't exist
    """
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"Output file not found: {file_path}")

    hasher = hashlib.sha256()

    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hasher.update(chunk)

    return hasher.hexdigest()
