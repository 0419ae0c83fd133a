# handoff/session/manager.py
import logging
from typing import Optional

from handoff.core.clock import Clock, system_clock
from handoff.core.config import Policy
from handoff.core.errors import InvalidInput, SessionExpired, SessionNotActive, SessionNotFound
from handoff.core.ids import new_id, new_secret
from handoff.core.types import SecretKind, Session, SessionState
from handoff.storage import StorageBackend

logger = logging.getLogger(__name__)


def _require_identifier(name: str, value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(f"{name} must be a non-empty string")
    return value


class SessionManager:
    """
    Owns session lifecycle: activation with a fresh proximity secret, and reads.
    Expiry is never written on read; callers compare expires_at to the clock.
    """

    def __init__(self, store: StorageBackend, policy: Optional[Policy] = None, clock: Clock = system_clock):
        self.store = store
        self.policy = policy or Policy()
        self.clock = clock

    def activate(
        self,
        principal_id: str,
        subject_id: str,
        ttl: Optional[int] = None,
        secret_kind: SecretKind = SecretKind.SHORT_RANGE_SIGNAL,
    ) -> Session:
        _require_identifier("principal_id", principal_id)
        _require_identifier("subject_id", subject_id)
        if ttl is None:
            ttl = self.policy.default_session_ttl
        # bool is an int subclass; reject it explicitly
        if isinstance(ttl, bool) or not isinstance(ttl, int):
            raise InvalidInput("ttl must be an integer number of seconds")
        if not 0 < ttl <= self.policy.max_session_ttl:
            raise InvalidInput(f"ttl must be within (0, {self.policy.max_session_ttl}] seconds")
        try:
            kind = SecretKind(secret_kind)
        except ValueError:
            raise InvalidInput(f"Unsupported secret kind: {secret_kind!r}")

        created_at = self.clock()
        session = Session(
            id=new_id("s"),
            principal_id=principal_id,
            subject_id=subject_id,
            secret=new_secret(),
            secret_kind=kind,
            created_at=created_at,
            expires_at=created_at + ttl * 1000,
            state=SessionState.ACTIVE,
        )
        self.store.create_session(session)
        logger.info("Session %s activated for principal %s (ttl=%ss)", session.id, principal_id, ttl)
        return session

    def lookup(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Session '{session_id}' not found")
        return session

    def require_usable(self, session_id: str) -> Session:
        """Lookup plus the use-time checks: exists, not expired, still active."""
        session = self.lookup(session_id)
        if session.is_expired(self.clock()):
            raise SessionExpired(f"Session '{session_id}' expired")
        if session.state is not SessionState.ACTIVE:
            raise SessionNotActive(f"Session '{session_id}' is {session.state.value}")
        return session

    def sweep_expired(self) -> int:
        """Persist the expired state for overdue active sessions. Maintenance only."""
        count = self.store.expire_sessions(self.clock())
        if count:
            logger.info("Marked %d overdue sessions expired", count)
        return count
