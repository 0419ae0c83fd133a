"""
Ledger collaborators: an append-only, write-once registry of event hashes.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional


class LedgerClient(ABC):
    """
    submit_anchor is idempotent on the hash: a repeat submission returns the
    original reference and creates no second record.
    Implementations raise LedgerUnavailable (or LedgerRejected) on failure.
    """

    @abstractmethod
    def submit_anchor(self, anchor_hash: str, correlation_id: str) -> str:
        pass

    @abstractmethod
    def is_anchored(self, anchor_hash: str) -> bool:
        pass

    def close(self) -> None:
        pass


def create_ledger(uri: str, timeout: float = 10.0) -> Optional[LedgerClient]:
    """
    sqlite://<path>      local write-once registry
    http(s)://host/...   JSON-RPC anchor service
    empty                anchoring disabled (None)
    """
    uri = (uri or "").strip()
    if not uri:
        return None
    if uri.startswith("sqlite://"):
        from .registry import SQLiteAnchorRegistry
        raw_path = uri[len("sqlite://"):]
        if not raw_path:
            raise ValueError(f"Missing registry path in ledger URI: {uri}")
        return SQLiteAnchorRegistry(Path(raw_path).resolve())
    elif uri.startswith(("http://", "https://")):
        from .rpc import JsonRpcLedgerClient
        return JsonRpcLedgerClient(uri, timeout=timeout)
    else:
        raise ValueError(f"Unsupported ledger URI: {uri}")


from .anchorer import AnchorResult, EventAnchor

__all__ = ["LedgerClient", "create_ledger", "AnchorResult", "EventAnchor"]
