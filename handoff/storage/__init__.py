"""
Record store backends for sessions, challenges, identities and delivery events.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import List, Optional

from handoff.core.types import (
    Challenge,
    DeliveryEvent,
    EventState,
    Identity,
    IdentityStatus,
    Session,
    SessionState,
)


class StorageBackend(ABC):
    """
    Abstract record store. Persists exactly what it is handed and returns exactly
    what was written. The only concurrency primitives the core relies on are
    transaction() and the conditional updates (mark_challenge_used,
    set_session_state with expected=...).
    """

    @abstractmethod
    def transaction(self) -> AbstractContextManager:
        """Group the enclosed calls into one atomic unit (commit on exit, rollback on error)."""

    # sessions
    @abstractmethod
    def create_session(self, session: Session) -> None:
        pass

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[Session]:
        pass

    @abstractmethod
    def set_session_state(
        self, session_id: str, state: SessionState, expected: Optional[SessionState] = None
    ) -> bool:
        pass

    @abstractmethod
    def expire_sessions(self, now_ms: int) -> int:
        pass

    # challenges
    @abstractmethod
    def create_challenge(self, challenge: Challenge) -> None:
        pass

    @abstractmethod
    def get_latest_unused_challenge(self, session_id: str, actor_id: str) -> Optional[Challenge]:
        pass

    @abstractmethod
    def find_challenge_by_nonce(self, session_id: str, actor_id: str, nonce: str) -> Optional[Challenge]:
        pass

    @abstractmethod
    def mark_challenge_used(self, challenge_id: str) -> bool:
        """Set used=1 only if still unused. True when this call flipped it."""

    # delivery events
    @abstractmethod
    def create_delivery_event(self, event: DeliveryEvent) -> None:
        pass

    @abstractmethod
    def get_delivery_event(self, event_id: str) -> Optional[DeliveryEvent]:
        pass

    @abstractmethod
    def update_event_anchor(
        self,
        event_id: str,
        anchor_hash: str,
        ledger_ref: Optional[str],
        anchored_at: Optional[str],
        state: EventState,
    ) -> None:
        pass

    @abstractmethod
    def record_anchor_failure(
        self,
        event_id: str,
        anchor_hash: str,
        error: str,
        next_anchor_at: Optional[int],
        attempts: Optional[int] = None,
    ) -> None:
        """Count one failed attempt, or set the counter to `attempts` when given. Anchored events are untouched."""

    @abstractmethod
    def list_unanchored_events(self, now_ms: int, max_attempts: int, limit: int = 100) -> List[DeliveryEvent]:
        pass

    @abstractmethod
    def list_events(self, limit: int = 50) -> List[DeliveryEvent]:
        pass

    # identities
    @abstractmethod
    def register_identity(self, identity: Identity) -> None:
        """Insert a new identity. Raises DuplicateRegistration if actor_id exists."""

    @abstractmethod
    def get_identity(self, actor_id: str) -> Optional[Identity]:
        pass

    @abstractmethod
    def set_identity_status(self, actor_id: str, status: IdentityStatus) -> bool:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def ping(self) -> bool:
        return True


from .sqlite import SQLiteStorage

__all__ = ["StorageBackend", "SQLiteStorage"]
