# handoff/verify/verifier.py
import hmac
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from handoff.anchor import LedgerClient
from handoff.core.errors import EventNotFound, LedgerUnavailable
from handoff.core.types import DeliveryEvent
from handoff.crypto.hashing import anchor_hash
from handoff.crypto.keys import load_public_key, verify_signature
from handoff.identity import IdentityRegistry
from handoff.storage import StorageBackend

logger = logging.getLogger(__name__)


@dataclass
class VerificationFailure:
    message: str
    category: str = "general"  # e.g. "hash", "signature", "ledger"


@dataclass
class VerificationReport:
    event_id: str
    session_id: str
    subject_id: str
    actor_id: str
    proof_timestamp: str
    state: str
    stored_hash: Optional[str]
    recomputed_hash: str
    hash_matches: Optional[bool]             # None when the event was never hashed
    signature_valid: Optional[bool]          # None when the actor's key is gone
    ledger_ref: Optional[str] = None
    anchored_at: Optional[str] = None
    ledger_confirmed: bool = False
    failures: List[VerificationFailure] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.failures

    def __bool__(self):
        return self.is_valid

    def __str__(self):
        if self.is_valid:
            return f"Event {self.event_id} is valid ✓"
        lines = [f"Verification FAILED for {self.event_id} ({len(self.failures)} issues):"]
        for f in self.failures:
            lines.append(f"  • {f.category}: {f.message}")
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "session_id": self.session_id,
            "subject_id": self.subject_id,
            "actor_id": self.actor_id,
            "proof_timestamp": self.proof_timestamp,
            "state": self.state,
            "anchor_hash": self.stored_hash,
            "recomputed_hash": self.recomputed_hash,
            "hash_matches": self.hash_matches,
            "signature_valid": self.signature_valid,
            "ledger_ref": self.ledger_ref,
            "anchored_at": self.anchored_at,
            "ledger_confirmed": self.ledger_confirmed,
            "valid": self.is_valid,
            "failures": [{"category": f.category, "message": f.message} for f in self.failures],
        }


class VerificationService:
    """
    Read path for auditors. Recomputes an event's anchor hash from what is
    stored, re-checks the actor's signature over the stored message, and
    asks the ledger whether the hash is present.
    """

    def __init__(
        self,
        store: StorageBackend,
        identities: IdentityRegistry,
        ledger: Optional[LedgerClient] = None,
    ):
        self.store = store
        self.identities = identities
        self.ledger = ledger

    def verify(self, event_id: str) -> VerificationReport:
        event = self.store.get_delivery_event(event_id)
        if event is None:
            raise EventNotFound(f"Event '{event_id}' not found")
        return self.verify_event(event)

    def verify_event(self, event: DeliveryEvent) -> VerificationReport:
        recomputed = anchor_hash(event)
        report = VerificationReport(
            event_id=event.id,
            session_id=event.session_id,
            subject_id=event.subject_id,
            actor_id=event.actor_id,
            proof_timestamp=event.proof_timestamp,
            state=event.state.value,
            stored_hash=event.anchor_hash,
            recomputed_hash=recomputed,
            hash_matches=None,
            signature_valid=None,
            ledger_ref=event.ledger_ref,
            anchored_at=event.anchored_at,
        )

        # 1. At-rest integrity
        if event.anchor_hash is not None:
            report.hash_matches = hmac.compare_digest(event.anchor_hash.encode(), recomputed.encode())
            if not report.hash_matches:
                report.failures.append(VerificationFailure(
                    "Stored anchor hash does not match the recomputed hash", "hash"))

        # 2. Signature over the stored message
        report.signature_valid = self._check_signature(event)
        if report.signature_valid is False:
            report.failures.append(VerificationFailure(
                "Stored signature does not verify against the actor's key", "signature"))

        # 3. Ledger presence, once a reference was recorded; skipped without a ledger client
        if event.ledger_ref and self.ledger is not None:
            report.ledger_confirmed = self._ledger_has(recomputed, report)
            already_reported = any(f.category == "ledger" for f in report.failures)
            if not report.ledger_confirmed and not already_reported:
                report.failures.append(VerificationFailure(
                    "Anchor hash not confirmed by the ledger", "ledger"))

        return report

    def _check_signature(self, event: DeliveryEvent) -> Optional[bool]:
        identity = self.store.get_identity(event.actor_id)
        if identity is None:
            return None
        try:
            public_key = load_public_key(identity.public_key, identity.key_kind)
            signature = bytes.fromhex(event.signature)
        except ValueError:
            return False
        return verify_signature(public_key, signature, event.message.encode("utf-8"))

    def _ledger_has(self, digest: str, report: VerificationReport) -> bool:
        try:
            return self.ledger.is_anchored(digest)
        except LedgerUnavailable as e:
            logger.warning("Ledger lookup for event %s failed: %s", report.event_id, e.message)
            report.failures.append(VerificationFailure(f"Ledger unreachable: {e.message}", "ledger"))
            return False
