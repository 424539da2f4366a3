"""Durable step journal.

This package provides:
- Abstract StepJournal interface (orchestrator-backed or local)
- SQLite implementation with WAL mode and a transition audit log
- StepJournalBridge: run a step's work at most once per request key
- Deterministic step ids and content hashes
"""

from .backends import StepJournal
from .bridge import StepJournalBridge
from .hashing import compute_output_hash, compute_request_hash, compute_step_id
from .models import StepRecord, StepResult, StepStatus, StepTransition
from .sqlite_backend import SQLiteJournal

__all__ = [
    "StepJournal",
    "SQLiteJournal",
    "StepJournalBridge",
    "StepRecord",
    "StepResult",
    "StepStatus",
    "StepTransition",
    "compute_output_hash",
    "compute_request_hash",
    "compute_step_id",
]
