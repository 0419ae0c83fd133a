# handoff/anchor/rpc.py
import itertools
import logging
from typing import Any, Optional

import httpx

from handoff.core.errors import LedgerRejected, LedgerUnavailable
from . import LedgerClient

logger = logging.getLogger(__name__)


class JsonRpcLedgerClient(LedgerClient):
    """
    JSON-RPC 2.0 client for a remote anchor registry.

    Methods:
      anchor_submit(hash, correlation_id) -> reference   (idempotent on hash)
      anchor_isAnchored(hash) -> bool
    """

    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)
        self._ids = itertools.count(1)

    def _call(self, method: str, *params: Any) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": list(params)}
        try:
            response = self._client.post(self.url, json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as e:
            raise LedgerUnavailable(f"Ledger RPC {method} timed out: {e}")
        except httpx.HTTPStatusError as e:
            raise LedgerUnavailable(f"Ledger RPC {method} returned HTTP {e.response.status_code}")
        except httpx.HTTPError as e:
            raise LedgerUnavailable(f"Ledger RPC {method} failed: {e}")
        except ValueError as e:
            raise LedgerUnavailable(f"Ledger RPC {method} returned invalid JSON: {e}")

        if not isinstance(body, dict):
            raise LedgerUnavailable(f"Ledger RPC {method} returned a non-object response")
        if body.get("error"):
            error = body["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise LedgerRejected(f"Ledger rejected {method}: {message}")
        if "result" not in body:
            raise LedgerUnavailable(f"Ledger RPC {method} response has no result")
        return body["result"]

    def submit_anchor(self, anchor_hash: str, correlation_id: str) -> str:
        result = self._call("anchor_submit", anchor_hash, correlation_id)
        if not isinstance(result, str) or not result:
            raise LedgerUnavailable("Ledger returned an empty anchor reference")
        return result

    def is_anchored(self, anchor_hash: str) -> bool:
        return bool(self._call("anchor_isAnchored", anchor_hash))

    def close(self) -> None:
        self._client.close()
