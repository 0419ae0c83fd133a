# handoff/context.py
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from handoff.anchor import LedgerClient, create_ledger
from handoff.core.clock import Clock, system_clock
from handoff.core.config import Policy, resolve_db_path, resolve_ledger_uri
from handoff.storage import SQLiteStorage, StorageBackend


@dataclass
class HandoffContext:
    """
    Everything the components share: one record store, one ledger client,
    the policy and the clock. Built once by the host and passed in explicitly.
    """
    store: StorageBackend
    ledger: Optional[LedgerClient] = None
    policy: Policy = field(default_factory=Policy)
    clock: Clock = system_clock

    @classmethod
    def from_env(
        cls,
        db_path: str | Path | None = None,
        ledger_uri: Optional[str] = None,
        policy: Optional[Policy] = None,
    ) -> "HandoffContext":
        policy = policy or Policy.from_env()
        store = SQLiteStorage(resolve_db_path(db_path))
        ledger = create_ledger(resolve_ledger_uri(ledger_uri), timeout=policy.ledger_timeout)
        return cls(store=store, ledger=ledger, policy=policy)

    def close(self) -> None:
        if self.ledger is not None:
            self.ledger.close()
        self.store.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
