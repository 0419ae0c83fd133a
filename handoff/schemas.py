# handoff/schemas.py
"""
Wire models for the operations the HTTP dispatcher exposes.
Unknown fields are rejected before anything reaches the core.
"""

from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt

from handoff.core.types import KeyKind, SecretKind


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class ActivateSessionRequest(_Request):
    principal_id: str = Field(..., min_length=1, max_length=256, description="Customer identifier")
    subject_id: str = Field(..., min_length=1, max_length=256, description="Order identifier")
    ttl_seconds: Optional[StrictInt] = Field(None, description="Session lifetime; policy default when omitted")
    secret_kind: SecretKind = SecretKind.SHORT_RANGE_SIGNAL


class ActivateSessionResponse(BaseModel):
    session_id: str
    secret: str
    secret_kind: SecretKind
    expires_at: str
    ttl_seconds: int


class IssueChallengeRequest(_Request):
    session_id: str = Field(..., min_length=1, max_length=128)
    actor_id: str = Field(..., min_length=1, max_length=128)


class IssueChallengeResponse(BaseModel):
    nonce: str
    expires_at: str


class ProofBundleModel(_Request):
    # the signed text is verified byte-for-byte; never normalize it
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=False)

    message: str = Field(..., min_length=1, max_length=8192, description="Exact signed text")
    signature: str = Field(..., min_length=1, max_length=256, description="Hex signature over message")


class SubmitProofRequest(_Request):
    session_id: str = Field(..., min_length=1, max_length=128)
    actor_id: str = Field(..., min_length=1, max_length=128)
    proof_bundle: Union[ProofBundleModel, str] = Field(
        ..., description="Structured bundle, or base64 of its JSON encoding"
    )
    evidence_hashes: List[str] = Field(default_factory=list, max_length=32)


class SubmitProofResponse(BaseModel):
    status: Literal["verified"] = "verified"
    event_id: str
    anchor_state: str
    ledger_ref: Optional[str] = None


class VerifyEventRequest(_Request):
    event_id: str = Field(..., min_length=1, max_length=128)


class VerificationFailureView(BaseModel):
    category: str
    message: str


class VerificationReportView(BaseModel):
    event_id: str
    session_id: str
    subject_id: str
    actor_id: str
    proof_timestamp: str
    state: str
    anchor_hash: Optional[str] = None
    recomputed_hash: str
    hash_matches: Optional[bool] = None
    signature_valid: Optional[bool] = None
    ledger_ref: Optional[str] = None
    anchored_at: Optional[str] = None
    ledger_confirmed: bool = False
    valid: bool
    failures: List[VerificationFailureView] = Field(default_factory=list)


class RegisterIdentityRequest(_Request):
    actor_id: str = Field(..., min_length=1, max_length=128)
    public_key: str = Field(..., min_length=1, max_length=512)
    key_kind: KeyKind = KeyKind.SECP256K1


class RegisterIdentityResponse(BaseModel):
    status: Literal["registered"] = "registered"
    actor_id: str
    key_kind: KeyKind


class HealthResponse(BaseModel):
    status: str
    store: bool
    ledger: str
    timestamp: str
