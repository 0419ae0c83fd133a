# handoff/core/errors.py
"""
Failure taxonomy.

Every failure carries a stable ``kind`` code (what auditors and client retry
logic key on) and the HTTP status the dispatcher answers with. Concrete
failures inherit both a taxonomy kind (NotFound, Expired, ...) and, where it
applies, the proof-verification step that rejected them (SessionInvalid,
ChallengeInvalid), so callers can catch at either granularity.
"""


class HandoffError(Exception):
    kind = "handoff_error"
    http_status = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message}


# ── taxonomy kinds

class InvalidInput(HandoffError):
    kind = "invalid_input"
    http_status = 400


class NotFound(HandoffError):
    kind = "not_found"
    http_status = 404


class Expired(HandoffError):
    kind = "expired"
    http_status = 400


class StateConflict(HandoffError):
    kind = "state_conflict"
    http_status = 409


class SecretMismatch(HandoffError):
    kind = "secret_mismatch"
    http_status = 403


class SignatureInvalid(HandoffError):
    kind = "signature_invalid"
    http_status = 401


class MalformedProof(InvalidInput):
    kind = "malformed_proof"
    http_status = 400


class DuplicateRegistration(HandoffError):
    kind = "duplicate_registration"
    http_status = 409


class LedgerUnavailable(HandoffError):
    kind = "ledger_unavailable"
    http_status = 503


class LedgerRejected(LedgerUnavailable):
    """The ledger answered, but refused the write."""
    kind = "ledger_rejected"


# ── proof-step families

class SessionInvalid(HandoffError):
    kind = "session_invalid"
    http_status = 400


class ChallengeInvalid(HandoffError):
    kind = "challenge_invalid"
    http_status = 400


# ── concrete failures

class SessionNotFound(NotFound, SessionInvalid):
    kind = "session_not_found"
    http_status = 404


class SessionExpired(Expired, SessionInvalid):
    kind = "session_expired"
    http_status = 400


class SessionNotActive(StateConflict, SessionInvalid):
    kind = "session_not_active"
    http_status = 400


class ChallengeNotFound(NotFound, ChallengeInvalid):
    kind = "challenge_not_found"
    http_status = 400


class ChallengeExpired(Expired, ChallengeInvalid):
    kind = "challenge_expired"
    http_status = 400


class ChallengeUsed(StateConflict, ChallengeInvalid):
    kind = "challenge_used"
    http_status = 400


class NonceMismatch(ChallengeInvalid):
    kind = "nonce_mismatch"
    http_status = 400


class ActorNotRegistered(NotFound):
    kind = "actor_not_registered"
    http_status = 400


class IdentityNotFound(NotFound):
    kind = "identity_not_found"
    http_status = 404


class EventNotFound(NotFound):
    kind = "event_not_found"
    http_status = 404


class ChallengeReplayed(ChallengeUsed, SessionInvalid):
    """A consumed nonce presented again after its session completed."""
    kind = "challenge_used"
    http_status = 400
