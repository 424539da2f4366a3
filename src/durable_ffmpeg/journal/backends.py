from __future__ import annotations

"""Abstract base class for step journal storage.

The journal stands in for the durable-execution orchestrator's step store:
it records one StepRecord per (request key, step name), the request each key
was first accepted with, and the terminal outcome of each key. The bridge and
the state machine only talk to this interface, so a journal backed by the
orchestrator's own API can replace the local SQLite one.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .models import StepRecord


class StepJournal(ABC):
    """Durable step store.

    Implementations must provide:
    - Atomic single-record updates (a crash never leaves a half-written record)
    - Thread safety (many requests journal concurrently)
    - First-writer-wins semantics for request registration and outcomes
    """

    @abstractmethod
    def get_step(self, step_id: str) -> Optional["StepRecord"]:
        """Look up one step record.

        Returns:
            StepRecord or None if the step never started
        """
        pass

    @abstractmethod
    def begin_attempt(self, step_id: str, request_key: str, step_name: str) -> "StepRecord":
        """Mark a step pending and count the attempt.

        Implementation notes:
        - Inserts the record on first use, otherwise increments ``attempts``
        - MUST NOT touch a completed record
        - Clears ``resume_after``; the timer it carried has been honored
        """
        pass

    @abstractmethod
    def complete_step(
        self,
        step_id: str,
        result: Dict[str, Any],
        error_kind: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> "StepRecord":
        """Mark a step completed, with its result or with a fatal error.

        A completed record is final: later calls for the same step are replayed
        from it and never run the work again.
        """
        pass

    @abstractmethod
    def fail_step(self, step_id: str, error_kind: str, error_message: str) -> "StepRecord":
        """Record a recoverable failure. The step stays eligible for retry."""
        pass

    @abstractmethod
    def set_resume_after(self, step_id: str, resume_after: Optional[datetime]) -> None:
        """Persist (or clear) the durable retry timer of a step."""
        pass

    @abstractmethod
    def list_steps(self, request_key: str) -> List["StepRecord"]:
        """All step records of one request, oldest first."""
        pass

    @abstractmethod
    def register_request(self, request_key: str, request_hash: str, request: Dict[str, Any]) -> str:
        """Remember the parameters a key was first accepted with.

        Returns:
            The hash stored for the key (the caller's own hash on first use)
        """
        pass

    @abstractmethod
    def get_request(self, request_key: str) -> Optional[Dict[str, Any]]:
        """Registered request row (key, hash, request, created_at) or None."""
        pass

    @abstractmethod
    def list_requests(self) -> List[Dict[str, Any]]:
        """All registered requests with their outcome status, if any."""
        pass

    @abstractmethod
    def get_outcome(self, request_key: str) -> Optional[Dict[str, Any]]:
        """Recorded terminal outcome for a key, or None."""
        pass

    @abstractmethod
    def record_outcome(self, request_key: str, outcome: Dict[str, Any]) -> Dict[str, Any]:
        """Store the terminal outcome unless one already exists.

        Returns:
            The stored outcome, which is the earlier one if a race lost
        """
        pass

    @abstractmethod
    def clear(self, request_key: Optional[str] = None) -> int:
        """Forget one key (or everything). Returns the number of requests removed."""
        pass

    @abstractmethod
    def ping(self) -> bool:
        """Return True if the journal is reachable."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the underlying connection."""
        pass
