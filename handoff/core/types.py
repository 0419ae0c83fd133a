# handoff/core/types.py
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import List, Optional


class SecretKind(str, Enum):
    """How the session secret reaches the delivery actor's device."""
    SHORT_RANGE_SIGNAL = "BLE"
    VISUAL_CODE = "QR"


class SessionState(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"


class IdentityStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


class KeyKind(str, Enum):
    SECP256K1 = "secp256k1"
    ED25519 = "ed25519"


class EventState(str, Enum):
    PENDING = "pending"
    ANCHORED = "anchored"
    ANCHOR_FAILED = "anchor_failed"


@dataclass(frozen=True)
class Session:
    """Time-boxed authorization window binding a customer order to a proximity secret."""
    id: str
    principal_id: str               # customer
    subject_id: str                 # order
    secret: str                     # hex, 32 random bytes
    secret_kind: SecretKind
    created_at: int                 # epoch millis
    expires_at: int                 # epoch millis
    state: SessionState = SessionState.ACTIVE

    def is_expired(self, now_ms: int) -> bool:
        return now_ms > self.expires_at

    def effective_state(self, now_ms: int) -> SessionState:
        """Stored state, with an overdue active session reported as expired."""
        if self.state is SessionState.ACTIVE and self.is_expired(now_ms):
            return SessionState.EXPIRED
        return self.state


@dataclass(frozen=True)
class Challenge:
    """One-time nonce scoped to a (session, actor) pair."""
    id: str
    session_id: str
    actor_id: str
    nonce: str                      # hex, 16 random bytes
    created_at: int
    expires_at: int
    used: bool = False

    def is_expired(self, now_ms: int) -> bool:
        return now_ms > self.expires_at


@dataclass(frozen=True)
class Identity:
    actor_id: str
    public_key: str                 # hex encoded, format depends on key_kind
    key_kind: KeyKind
    registered_at: int
    status: IdentityStatus = IdentityStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status is IdentityStatus.ACTIVE


# Fields that describe the anchoring process rather than the proof itself.
# They never feed the anchor hash.
ANCHORING_FIELDS = frozenset({
    "anchor_hash",
    "ledger_ref",
    "anchored_at",
    "state",
    "anchor_attempts",
    "next_anchor_at",
    "last_anchor_error",
})


@dataclass(frozen=True)
class DeliveryEvent:
    """Record minted once per successfully verified proof."""
    id: str
    session_id: str
    subject_id: str
    principal_id: str
    actor_id: str
    secret_hash: str                # "sha256:<hex>"
    challenge_nonce: str
    signature: str                  # hex, as submitted
    message: str                    # exact signed bytes, utf-8
    proof_timestamp: str            # ISO 8601, as signed by the actor
    received_at: str                # ISO 8601 UTC with millis
    evidence_hashes: List[str] = field(default_factory=list)
    anchor_hash: Optional[str] = None
    ledger_ref: Optional[str] = None
    anchored_at: Optional[str] = None
    state: EventState = EventState.PENDING
    anchor_attempts: int = 0
    next_anchor_at: Optional[int] = None
    last_anchor_error: Optional[str] = None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["state"] = self.state.value
        return d

    def anchor_payload(self) -> dict:
        """Everything but the anchoring fields; input to the anchor hash."""
        d = self.to_dict()
        return {k: v for k, v in d.items() if k not in ANCHORING_FIELDS}
