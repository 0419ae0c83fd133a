# handoff/anchor/registry.py
import sqlite3
import threading
from pathlib import Path
from typing import Optional

from handoff.core.clock import Clock, iso_from_ms, system_clock
from handoff.core.errors import LedgerRejected, LedgerUnavailable
from handoff.crypto.hashing import sha256_hex
from . import LedgerClient


class SQLiteAnchorRegistry(LedgerClient):
    """
    Local append-only anchor registry with the same contract as a remote ledger:
    presence-check-then-insert, no updates, no deletes.
    """

    def __init__(self, db_path: str | Path, clock: Clock = system_clock):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.clock = clock
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = sqlite3.connect(
            str(self.db_path), isolation_level=None, check_same_thread=False, timeout=30.0
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS anchors (
                anchor_hash     TEXT    PRIMARY KEY,
                correlation_id  TEXT    NOT NULL,
                reference       TEXT    NOT NULL,
                anchored_at     TEXT    NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE TRIGGER IF NOT EXISTS anchors_no_update BEFORE UPDATE ON anchors
            BEGIN SELECT RAISE(ABORT, 'anchors are write-once'); END
        """)
        self._conn.execute("""
            CREATE TRIGGER IF NOT EXISTS anchors_no_delete BEFORE DELETE ON anchors
            BEGIN SELECT RAISE(ABORT, 'anchors are append-only'); END
        """)

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise LedgerUnavailable("Anchor registry is closed")
        return self._conn

    def submit_anchor(self, anchor_hash: str, correlation_id: str) -> str:
        if not anchor_hash or not correlation_id:
            raise LedgerRejected("anchor_hash and correlation_id are required")
        with self._lock:
            try:
                row = self.conn.execute(
                    "SELECT reference FROM anchors WHERE anchor_hash = ?", (anchor_hash,)
                ).fetchone()
                if row:
                    return row[0]
                anchored_at = iso_from_ms(self.clock())
                reference = "0x" + sha256_hex(f"{anchor_hash}|{correlation_id}|{anchored_at}")
                self.conn.execute(
                    "INSERT INTO anchors (anchor_hash, correlation_id, reference, anchored_at) VALUES (?, ?, ?, ?)",
                    (anchor_hash, correlation_id, reference, anchored_at),
                )
                return reference
            except sqlite3.Error as e:
                raise LedgerUnavailable(f"Anchor registry write failed: {e}")

    def is_anchored(self, anchor_hash: str) -> bool:
        with self._lock:
            try:
                row = self.conn.execute(
                    "SELECT 1 FROM anchors WHERE anchor_hash = ?", (anchor_hash,)
                ).fetchone()
            except sqlite3.Error as e:
                raise LedgerUnavailable(f"Anchor registry read failed: {e}")
        return row is not None

    def count(self) -> int:
        with self._lock:
            return self.conn.execute("SELECT COUNT(*) FROM anchors").fetchone()[0]

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
