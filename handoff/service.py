# handoff/service.py
import logging
from typing import Any, Callable, Dict, Tuple, Type

from pydantic import BaseModel, ValidationError

from handoff.anchor import EventAnchor
from handoff.context import HandoffContext
from handoff.core.clock import iso_from_ms
from handoff.core.errors import HandoffError, InvalidInput
from handoff.identity import IdentityRegistry
from handoff.schemas import (
    ActivateSessionRequest,
    ActivateSessionResponse,
    HealthResponse,
    IssueChallengeRequest,
    IssueChallengeResponse,
    ProofBundleModel,
    RegisterIdentityRequest,
    RegisterIdentityResponse,
    SubmitProofRequest,
    SubmitProofResponse,
    VerificationReportView,
    VerifyEventRequest,
)
from handoff.session import ChallengeIssuer, SessionManager
from handoff.verify import ProofBundle, ProofVerifier, VerificationService

logger = logging.getLogger(__name__)


class HandoffService:
    """
    Wires the components over one HandoffContext and exposes the wire
    operations. handle() is the seam an HTTP dispatcher calls: raw body in,
    (status, body) out.
    """

    def __init__(self, context: HandoffContext):
        self.context = context
        store, policy, clock = context.store, context.policy, context.clock

        self.identities = IdentityRegistry(store, clock=clock)
        self.sessions = SessionManager(store, policy=policy, clock=clock)
        self.challenges = ChallengeIssuer(store, self.sessions, self.identities, policy=policy, clock=clock)
        self.verifier = ProofVerifier(store, self.sessions, self.challenges, self.identities, clock=clock)
        self.anchor = EventAnchor(store, context.ledger, policy=policy, clock=clock)
        self.verification = VerificationService(store, self.identities, ledger=context.ledger)

        self._operations: Dict[str, Tuple[Type[BaseModel], Callable[[Any], BaseModel]]] = {
            "activate_session": (ActivateSessionRequest, self.activate_session),
            "issue_challenge": (IssueChallengeRequest, self.issue_challenge),
            "submit_proof": (SubmitProofRequest, self.submit_proof),
            "verify_event": (VerifyEventRequest, self.verify_event),
            "register_identity": (RegisterIdentityRequest, self.register_identity),
        }

    # ── operations

    def activate_session(self, req: ActivateSessionRequest) -> ActivateSessionResponse:
        session = self.sessions.activate(
            req.principal_id, req.subject_id, ttl=req.ttl_seconds, secret_kind=req.secret_kind
        )
        return ActivateSessionResponse(
            session_id=session.id,
            secret=session.secret,
            secret_kind=session.secret_kind,
            expires_at=iso_from_ms(session.expires_at),
            ttl_seconds=(session.expires_at - session.created_at) // 1000,
        )

    def issue_challenge(self, req: IssueChallengeRequest) -> IssueChallengeResponse:
        challenge = self.challenges.issue(req.session_id, req.actor_id)
        return IssueChallengeResponse(nonce=challenge.nonce, expires_at=iso_from_ms(challenge.expires_at))

    def submit_proof(self, req: SubmitProofRequest) -> SubmitProofResponse:
        if isinstance(req.proof_bundle, ProofBundleModel):
            bundle = ProofBundle(message=req.proof_bundle.message, signature=req.proof_bundle.signature)
        else:
            bundle = req.proof_bundle
        event = self.verifier.verify(
            bundle, req.evidence_hashes, session_id=req.session_id, actor_id=req.actor_id
        )
        # proof is committed; anchoring can only improve auditability from here
        result = self.anchor.anchor(event)
        return SubmitProofResponse(event_id=event.id, anchor_state=result.state.value, ledger_ref=result.ledger_ref)

    def verify_event(self, req: VerifyEventRequest) -> VerificationReportView:
        report = self.verification.verify(req.event_id)
        return VerificationReportView(**report.to_dict())

    def register_identity(self, req: RegisterIdentityRequest) -> RegisterIdentityResponse:
        identity = self.identities.register(req.actor_id, req.public_key, req.key_kind)
        return RegisterIdentityResponse(actor_id=identity.actor_id, key_kind=identity.key_kind)

    def health(self) -> HealthResponse:
        store_ok = self.context.store.ping()
        return HealthResponse(
            status="ok" if store_ok else "degraded",
            store=store_ok,
            ledger="configured" if self.context.ledger is not None else "disabled",
            timestamp=iso_from_ms(self.context.clock()),
        )

    # ── dispatcher seam

    def handle(self, operation: str, body: Any) -> Tuple[int, dict]:
        if operation == "health":
            return 200, self.health().model_dump(mode="json")
        if operation not in self._operations:
            return 404, {"error": "unknown_operation", "message": f"Unknown operation '{operation}'"}

        model, handler = self._operations[operation]
        try:
            req = model.model_validate(body if body is not None else {})
        except ValidationError as e:
            err = InvalidInput(_summarize_validation(e))
            return err.http_status, err.to_dict()

        try:
            response = handler(req)
        except HandoffError as e:
            logger.info("%s rejected: %s (%s)", operation, e.kind, e.message)
            return e.http_status, e.to_dict()
        except Exception:
            logger.exception("%s failed unexpectedly", operation)
            return 500, {"error": "internal_error", "message": "Internal server error"}
        return 200, response.model_dump(mode="json")


def _summarize_validation(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item.get("loc", ())) or "body"
        parts.append(f"{loc}: {item.get('msg', 'invalid')}")
    return "; ".join(parts)
