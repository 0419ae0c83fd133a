# handoff/storage/sqlite.py
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from handoff.core.config import resolve_db_path
from handoff.core.errors import DuplicateRegistration
from handoff.core.types import (
    Challenge,
    DeliveryEvent,
    EventState,
    Identity,
    IdentityStatus,
    KeyKind,
    SecretKind,
    Session,
    SessionState,
)
from . import StorageBackend

logger = logging.getLogger(__name__)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS sessions (
        session_id      TEXT    PRIMARY KEY,
        principal_id    TEXT    NOT NULL,
        subject_id      TEXT    NOT NULL,
        secret          TEXT    NOT NULL,
        secret_kind     TEXT    NOT NULL,
        created_at      INTEGER NOT NULL,
        expires_at      INTEGER NOT NULL,
        state           TEXT    NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS challenges (
        challenge_id    TEXT    PRIMARY KEY,
        session_id      TEXT    NOT NULL REFERENCES sessions(session_id),
        actor_id        TEXT    NOT NULL,
        nonce           TEXT    NOT NULL,
        created_at      INTEGER NOT NULL,
        expires_at      INTEGER NOT NULL,
        used            INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS identities (
        actor_id        TEXT    PRIMARY KEY,
        public_key      TEXT    NOT NULL,
        key_kind        TEXT    NOT NULL,
        registered_at   INTEGER NOT NULL,
        status          TEXT    NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS delivery_events (
        event_id            TEXT    PRIMARY KEY,
        session_id          TEXT    NOT NULL UNIQUE REFERENCES sessions(session_id),
        subject_id          TEXT    NOT NULL,
        principal_id        TEXT    NOT NULL,
        actor_id            TEXT    NOT NULL,
        secret_hash         TEXT    NOT NULL,
        challenge_nonce     TEXT    NOT NULL,
        signature           TEXT    NOT NULL,
        message             TEXT    NOT NULL,
        evidence_hashes     TEXT    NOT NULL,
        proof_timestamp     TEXT    NOT NULL,
        received_at         TEXT    NOT NULL,
        anchor_hash         TEXT,
        ledger_ref          TEXT,
        anchored_at         TEXT,
        state               TEXT    NOT NULL,
        anchor_attempts     INTEGER NOT NULL DEFAULT 0,
        next_anchor_at      INTEGER,
        last_anchor_error   TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_principal ON sessions(principal_id)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_expires   ON sessions(expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_challenges_pair    ON challenges(session_id, actor_id, used)",
    "CREATE INDEX IF NOT EXISTS idx_events_actor       ON delivery_events(actor_id)",
    "CREATE INDEX IF NOT EXISTS idx_events_state       ON delivery_events(state, next_anchor_at)",
    "CREATE INDEX IF NOT EXISTS idx_events_anchor      ON delivery_events(anchor_hash)",
]

_EVENT_COLUMNS = """
    event_id, session_id, subject_id, principal_id, actor_id, secret_hash,
    challenge_nonce, signature, message, evidence_hashes, proof_timestamp,
    received_at, anchor_hash, ledger_ref, anchored_at, state, anchor_attempts,
    next_anchor_at, last_anchor_error
"""


def _row_to_session(row) -> Session:
    sid, principal, subject, secret, kind, created, expires, state = row
    return Session(
        id=sid,
        principal_id=principal,
        subject_id=subject,
        secret=secret,
        secret_kind=SecretKind(kind),
        created_at=created,
        expires_at=expires,
        state=SessionState(state),
    )


def _row_to_challenge(row) -> Challenge:
    cid, sid, actor, nonce, created, expires, used = row
    return Challenge(
        id=cid,
        session_id=sid,
        actor_id=actor,
        nonce=nonce,
        created_at=created,
        expires_at=expires,
        used=bool(used),
    )


def _row_to_event(row) -> DeliveryEvent:
    (eid, sid, subject, principal, actor, shash, nonce, sig, message, evidence,
     proof_ts, received, ahash, ref, anchored, state, attempts, next_at, last_err) = row
    return DeliveryEvent(
        id=eid,
        session_id=sid,
        subject_id=subject,
        principal_id=principal,
        actor_id=actor,
        secret_hash=shash,
        challenge_nonce=nonce,
        signature=sig,
        message=message,
        proof_timestamp=proof_ts,
        received_at=received,
        evidence_hashes=json.loads(evidence),
        anchor_hash=ahash,
        ledger_ref=ref,
        anchored_at=anchored,
        state=EventState(state),
        anchor_attempts=attempts,
        next_anchor_at=next_at,
        last_anchor_error=last_err,
    )


class SQLiteStorage(StorageBackend):
    """
    SQLite record store.

    Each thread gets its own connection (autocommit mode, WAL journal), so
    unrelated requests never share a cursor. transaction() opens BEGIN IMMEDIATE,
    which takes the database write lock up front; conditional UPDATEs inside it
    decide races on challenge consumption.
    """

    def __init__(self, db_path: str | Path | None = None, busy_timeout: float = 30.0):
        self.db_path = resolve_db_path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout

        self._local = threading.local()
        self._conns: List[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()
        self._closed = False

        self._create_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path),
            isolation_level=None,
            timeout=self.busy_timeout,
            check_same_thread=False,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        with self._conns_lock:
            self._conns.append(conn)
        return conn

    @property
    def conn(self) -> sqlite3.Connection:
        if self._closed:
            raise RuntimeError("Storage connection is closed")
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
            self._local.depth = 0
        return conn

    def _create_schema(self):
        for stmt in _SCHEMA:
            self.conn.execute(stmt)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.conn
        if self._local.depth:
            # already inside a transaction on this thread
            self._local.depth += 1
            try:
                yield conn
            finally:
                self._local.depth -= 1
            return

        conn.execute("BEGIN IMMEDIATE")
        self._local.depth = 1
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")
        finally:
            self._local.depth = 0

    # ── sessions

    def create_session(self, session: Session) -> None:
        self.conn.execute("""
            INSERT INTO sessions
            (session_id, principal_id, subject_id, secret, secret_kind, created_at, expires_at, state)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            session.id, session.principal_id, session.subject_id, session.secret,
            session.secret_kind.value, session.created_at, session.expires_at, session.state.value
        ))

    def get_session(self, session_id: str) -> Optional[Session]:
        row = self.conn.execute("""
            SELECT session_id, principal_id, subject_id, secret, secret_kind,
                   created_at, expires_at, state
            FROM sessions WHERE session_id = ?
        """, (session_id,)).fetchone()
        return _row_to_session(row) if row else None

    def set_session_state(
        self, session_id: str, state: SessionState, expected: Optional[SessionState] = None
    ) -> bool:
        if expected is None:
            cur = self.conn.execute(
                "UPDATE sessions SET state = ? WHERE session_id = ?",
                (state.value, session_id),
            )
        else:
            cur = self.conn.execute(
                "UPDATE sessions SET state = ? WHERE session_id = ? AND state = ?",
                (state.value, session_id, expected.value),
            )
        return cur.rowcount == 1

    def expire_sessions(self, now_ms: int) -> int:
        cur = self.conn.execute(
            "UPDATE sessions SET state = ? WHERE state = ? AND expires_at < ?",
            (SessionState.EXPIRED.value, SessionState.ACTIVE.value, now_ms),
        )
        return cur.rowcount

    # ── challenges

    def create_challenge(self, challenge: Challenge) -> None:
        self.conn.execute("""
            INSERT INTO challenges
            (challenge_id, session_id, actor_id, nonce, created_at, expires_at, used)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            challenge.id, challenge.session_id, challenge.actor_id, challenge.nonce,
            challenge.created_at, challenge.expires_at, int(challenge.used)
        ))

    def get_challenge(self, challenge_id: str) -> Optional[Challenge]:
        row = self.conn.execute("""
            SELECT challenge_id, session_id, actor_id, nonce, created_at, expires_at, used
            FROM challenges WHERE challenge_id = ?
        """, (challenge_id,)).fetchone()
        return _row_to_challenge(row) if row else None

    def get_latest_unused_challenge(self, session_id: str, actor_id: str) -> Optional[Challenge]:
        # rowid breaks ties between challenges issued within the same millisecond
        row = self.conn.execute("""
            SELECT challenge_id, session_id, actor_id, nonce, created_at, expires_at, used
            FROM challenges
            WHERE session_id = ? AND actor_id = ? AND used = 0
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
        """, (session_id, actor_id)).fetchone()
        return _row_to_challenge(row) if row else None

    def find_challenge_by_nonce(self, session_id: str, actor_id: str, nonce: str) -> Optional[Challenge]:
        row = self.conn.execute("""
            SELECT challenge_id, session_id, actor_id, nonce, created_at, expires_at, used
            FROM challenges WHERE session_id = ? AND actor_id = ? AND nonce = ?
        """, (session_id, actor_id, nonce)).fetchone()
        return _row_to_challenge(row) if row else None

    def mark_challenge_used(self, challenge_id: str) -> bool:
        cur = self.conn.execute(
            "UPDATE challenges SET used = 1 WHERE challenge_id = ? AND used = 0",
            (challenge_id,),
        )
        return cur.rowcount == 1

    # ── delivery events

    def create_delivery_event(self, event: DeliveryEvent) -> None:
        self.conn.execute(f"""
            INSERT INTO delivery_events ({_EVENT_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            event.id, event.session_id, event.subject_id, event.principal_id, event.actor_id,
            event.secret_hash, event.challenge_nonce, event.signature, event.message,
            json.dumps(list(event.evidence_hashes), separators=(",", ":")),
            event.proof_timestamp, event.received_at, event.anchor_hash, event.ledger_ref,
            event.anchored_at, event.state.value, event.anchor_attempts, event.next_anchor_at,
            event.last_anchor_error,
        ))

    def get_delivery_event(self, event_id: str) -> Optional[DeliveryEvent]:
        row = self.conn.execute(
            f"SELECT {_EVENT_COLUMNS} FROM delivery_events WHERE event_id = ?",
            (event_id,),
        ).fetchone()
        return _row_to_event(row) if row else None

    def update_event_anchor(
        self,
        event_id: str,
        anchor_hash: str,
        ledger_ref: Optional[str],
        anchored_at: Optional[str],
        state: EventState,
    ) -> None:
        self.conn.execute("""
            UPDATE delivery_events
            SET anchor_hash = ?, ledger_ref = ?, anchored_at = ?, state = ?,
                next_anchor_at = NULL, last_anchor_error = NULL
            WHERE event_id = ?
        """, (anchor_hash, ledger_ref, anchored_at, state.value, event_id))

    def record_anchor_failure(
        self,
        event_id: str,
        anchor_hash: str,
        error: str,
        next_anchor_at: Optional[int],
        attempts: Optional[int] = None,
    ) -> None:
        self.conn.execute("""
            UPDATE delivery_events
            SET anchor_hash = ?, state = ?, anchor_attempts = COALESCE(?, anchor_attempts + 1),
                next_anchor_at = ?, last_anchor_error = ?
            WHERE event_id = ? AND state != ?
        """, (
            anchor_hash, EventState.ANCHOR_FAILED.value, attempts, next_anchor_at, error[:500],
            event_id, EventState.ANCHORED.value
        ))

    def list_unanchored_events(self, now_ms: int, max_attempts: int, limit: int = 100) -> List[DeliveryEvent]:
        cursor = self.conn.execute(f"""
            SELECT {_EVENT_COLUMNS} FROM delivery_events
            WHERE state IN (?, ?)
              AND anchor_attempts < ?
              AND (next_anchor_at IS NULL OR next_anchor_at <= ?)
            ORDER BY received_at ASC
            LIMIT ?
        """, (EventState.PENDING.value, EventState.ANCHOR_FAILED.value, max_attempts, now_ms, limit))
        return [_row_to_event(row) for row in cursor]

    def list_events(self, limit: int = 50) -> List[DeliveryEvent]:
        cursor = self.conn.execute(f"""
            SELECT {_EVENT_COLUMNS} FROM delivery_events
            ORDER BY received_at DESC
            LIMIT ?
        """, (limit,))
        return [_row_to_event(row) for row in cursor]

    # ── identities

    def register_identity(self, identity: Identity) -> None:
        try:
            self.conn.execute("""
                INSERT INTO identities (actor_id, public_key, key_kind, registered_at, status)
                VALUES (?, ?, ?, ?, ?)
            """, (
                identity.actor_id, identity.public_key, identity.key_kind.value,
                identity.registered_at, identity.status.value
            ))
        except sqlite3.IntegrityError:
            raise DuplicateRegistration(f"Actor '{identity.actor_id}' is already registered")

    def get_identity(self, actor_id: str) -> Optional[Identity]:
        row = self.conn.execute("""
            SELECT actor_id, public_key, key_kind, registered_at, status
            FROM identities WHERE actor_id = ?
        """, (actor_id,)).fetchone()
        if not row:
            return None
        aid, key, kind, registered, status = row
        return Identity(
            actor_id=aid,
            public_key=key,
            key_kind=KeyKind(kind),
            registered_at=registered,
            status=IdentityStatus(status),
        )

    def set_identity_status(self, actor_id: str, status: IdentityStatus) -> bool:
        cur = self.conn.execute(
            "UPDATE identities SET status = ? WHERE actor_id = ?",
            (status.value, actor_id),
        )
        return cur.rowcount == 1

    # ── lifecycle

    def ping(self) -> bool:
        try:
            self.conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as e:
            logger.warning("Record store ping failed: %s", e)
            return False
        return True

    def close(self) -> None:
        with self._conns_lock:
            conns, self._conns = self._conns, []
        for conn in conns:
            conn.close()
        self._closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
