# handoff/anchor/anchorer.py
import logging
from dataclasses import dataclass
from typing import List, Optional

from handoff.core.clock import Clock, iso_from_ms, system_clock
from handoff.core.config import Policy
from handoff.core.errors import EventNotFound, LedgerUnavailable
from handoff.core.types import DeliveryEvent, EventState
from handoff.crypto.hashing import anchor_hash
from handoff.storage import StorageBackend
from . import LedgerClient

logger = logging.getLogger(__name__)


@dataclass
class AnchorResult:
    event_id: str
    anchor_hash: str
    state: EventState
    ledger_ref: Optional[str] = None
    anchored_at: Optional[str] = None
    error: Optional[str] = None

    @property
    def anchored(self) -> bool:
        return self.state is EventState.ANCHORED

    def __bool__(self):
        return self.anchored


class EventAnchor:
    """
    Hashes delivery events and writes the hash to the ledger.

    Ledger trouble never undoes a verified proof: the event keeps its stored
    signature and hash, is marked anchor_failed, and gets a next_anchor_at
    for retry_pending() with exponential backoff up to policy.anchor_max_attempts.
    """

    def __init__(
        self,
        store: StorageBackend,
        ledger: Optional[LedgerClient],
        policy: Optional[Policy] = None,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.ledger = ledger
        self.policy = policy or Policy()
        self.clock = clock

    def anchor(self, event: DeliveryEvent) -> AnchorResult:
        if event.state is EventState.ANCHORED and event.anchor_hash and event.ledger_ref:
            return AnchorResult(
                event.id, event.anchor_hash, EventState.ANCHORED, event.ledger_ref, event.anchored_at
            )

        digest = anchor_hash(event)
        if event.anchor_hash and event.anchor_hash != digest:
            # content drifted since the first attempt: record it as exhausted so it is never retried
            error = "Event content no longer matches its recorded anchor hash"
            logger.error("Refusing to anchor event %s: %s", event.id, error)
            self.store.record_anchor_failure(
                event.id, event.anchor_hash, error, None, attempts=self.policy.anchor_max_attempts
            )
            return AnchorResult(event.id, event.anchor_hash, EventState.ANCHOR_FAILED, error=error)

        if self.ledger is None:
            self.store.update_event_anchor(event.id, digest, None, None, EventState.PENDING)
            logger.info("Ledger not configured; event %s stays pending", event.id)
            return AnchorResult(event.id, digest, EventState.PENDING, error="ledger not configured")

        # Ledger I/O happens outside any store transaction.
        try:
            ledger_ref = self.ledger.submit_anchor(digest, event.id)
        except LedgerUnavailable as e:
            return self._record_failure(event, digest, e.message)
        except Exception as e:
            # the proof is already committed; any client fault is just a failed attempt
            logger.warning("Ledger client raised %s for event %s", type(e).__name__, event.id)
            return self._record_failure(event, digest, f"{type(e).__name__}: {e}")

        anchored_at = iso_from_ms(self.clock())
        self.store.update_event_anchor(event.id, digest, ledger_ref, anchored_at, EventState.ANCHORED)
        logger.info("Event %s anchored: %s (ref %s)", event.id, digest[:18], ledger_ref)
        return AnchorResult(event.id, digest, EventState.ANCHORED, ledger_ref, anchored_at)

    def _record_failure(self, event: DeliveryEvent, digest: str, error: str) -> AnchorResult:
        attempts = event.anchor_attempts + 1
        next_at = self.clock() + self.policy.backoff_seconds(attempts) * 1000
        self.store.record_anchor_failure(event.id, digest, error, next_at)
        logger.warning(
            "Anchoring event %s failed (attempt %d/%d): %s",
            event.id, attempts, self.policy.anchor_max_attempts, error,
        )
        return AnchorResult(event.id, digest, EventState.ANCHOR_FAILED, error=error)

    def anchor_by_id(self, event_id: str) -> AnchorResult:
        event = self.store.get_delivery_event(event_id)
        if event is None:
            raise EventNotFound(f"Event '{event_id}' not found")
        return self.anchor(event)

    def retry_pending(self, limit: int = 100) -> List[AnchorResult]:
        """Re-anchor events left pending or failed whose backoff has elapsed. No proof re-verification."""
        if self.ledger is None:
            logger.info("Ledger not configured; nothing to retry")
            return []
        events = self.store.list_unanchored_events(
            self.clock(), self.policy.anchor_max_attempts, limit
        )
        results = [self.anchor(event) for event in events]
        if results:
            ok = sum(1 for r in results if r.anchored)
            logger.info("Anchor retry pass: %d/%d anchored", ok, len(results))
        return results
