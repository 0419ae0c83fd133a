# handoff/verify/proof.py
import base64
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

from handoff.core.canon import canonical_json_str
from handoff.core.clock import Clock, iso_from_ms, system_clock
from handoff.core.encoding import b64_decode_any, is_hex
from handoff.core.errors import (
    ChallengeExpired,
    ChallengeNotFound,
    ChallengeReplayed,
    ChallengeUsed,
    InvalidInput,
    MalformedProof,
    NonceMismatch,
    SecretMismatch,
    SessionExpired,
    SessionNotActive,
    SignatureInvalid,
)
from handoff.core.ids import new_id
from handoff.core.types import Challenge, DeliveryEvent, EventState, Session, SessionState
from handoff.crypto.hashing import SECRET_HASH_PREFIX, normalize_secret_hash, secret_hash
from handoff.crypto.keys import ActorKeyPair, load_public_key, verify_signature
from handoff.identity import IdentityRegistry
from handoff.session import ChallengeIssuer, SessionManager
from handoff.storage import StorageBackend

logger = logging.getLogger(__name__)

MESSAGE_FIELDS = ("session_id", "secret_hash", "challenge_nonce", "actor_id", "timestamp")
MAX_EVIDENCE_HASHES = 32
MAX_EVIDENCE_HASH_LEN = 256


@dataclass(frozen=True)
class ProofMessage:
    """Parsed view of the message an actor signs. Never re-serialized for verification."""
    session_id: str
    secret_hash: str
    challenge_nonce: str
    actor_id: str
    timestamp: str

    @classmethod
    def parse(cls, message: str) -> "ProofMessage":
        try:
            data = json.loads(message)
        except (TypeError, ValueError) as e:
            raise MalformedProof(f"Proof message is not valid JSON: {e}")
        if not isinstance(data, dict):
            raise MalformedProof("Proof message must be a JSON object")
        values = {}
        for name in MESSAGE_FIELDS:
            value = data.get(name)
            if not isinstance(value, str) or not value:
                raise MalformedProof(f"Proof message field '{name}' must be a non-empty string")
            values[name] = value
        if not is_hex(values["challenge_nonce"]):
            raise MalformedProof("Proof message field 'challenge_nonce' must be hex")
        digest = values["secret_hash"]
        if digest[:len(SECRET_HASH_PREFIX)].lower() == SECRET_HASH_PREFIX:
            digest = digest[len(SECRET_HASH_PREFIX):]
        if not is_hex(digest, 64):
            raise MalformedProof("Proof message field 'secret_hash' must be sha256:<64 hex chars>")
        return cls(**values)

    def to_message(self) -> str:
        """Canonical (JCS) text for a client to sign."""
        return canonical_json_str({name: getattr(self, name) for name in MESSAGE_FIELDS})


@dataclass(frozen=True)
class ProofBundle:
    """Signed message: the exact text the actor signed, plus a hex signature over its UTF-8 bytes."""
    message: str
    signature: str

    @classmethod
    def decode(cls, signed_blob: str) -> "ProofBundle":
        """Parse the base64 wire form of {"message": ..., "signature": ...}."""
        try:
            raw = b64_decode_any(signed_blob)
            data = json.loads(raw.decode("utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedProof(f"Signed blob does not decode: {e}")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data) -> "ProofBundle":
        if not isinstance(data, dict):
            raise MalformedProof("Proof bundle must be an object with message and signature")
        message, signature = data.get("message"), data.get("signature")
        if not isinstance(message, str) or not message:
            raise MalformedProof("Proof bundle 'message' must be a non-empty string")
        if not isinstance(signature, str) or not signature:
            raise MalformedProof("Proof bundle 'signature' must be a non-empty string")
        return cls(message=message, signature=signature)

    def encode(self) -> str:
        payload = json.dumps({"message": self.message, "signature": self.signature}, separators=(",", ":"))
        return base64.b64encode(payload.encode("utf-8")).decode("ascii")

    def signature_bytes(self) -> bytes:
        sig = self.signature[2:] if self.signature.startswith(("0x", "0X")) else self.signature
        if not is_hex(sig, 128):
            raise MalformedProof("Signature must be 128 hex characters (64 bytes)")
        return bytes.fromhex(sig)


BundleInput = Union[ProofBundle, str, dict]


def build_proof(
    signer: ActorKeyPair,
    session_id: str,
    secret: str,
    challenge_nonce: str,
    actor_id: str,
    timestamp: str,
) -> ProofBundle:
    """Actor side: sign a canonical proof message for a session secret and challenge."""
    message = ProofMessage(
        session_id=session_id,
        secret_hash=secret_hash(secret),
        challenge_nonce=challenge_nonce,
        actor_id=actor_id,
        timestamp=timestamp,
    ).to_message()
    return ProofBundle(message=message, signature=signer.sign_hex(message.encode("utf-8")))


def validate_evidence_hashes(evidence_hashes: Optional[Iterable[str]]) -> List[str]:
    if evidence_hashes is None:
        return []
    if isinstance(evidence_hashes, (str, bytes)):
        raise InvalidInput("evidence_hashes must be a list of strings")
    hashes = list(evidence_hashes)
    if len(hashes) > MAX_EVIDENCE_HASHES:
        raise InvalidInput(f"At most {MAX_EVIDENCE_HASHES} evidence hashes are accepted")
    for h in hashes:
        if not isinstance(h, str) or not h or len(h) > MAX_EVIDENCE_HASH_LEN:
            raise InvalidInput("Each evidence hash must be a non-empty string of at most 256 characters")
    return hashes


class ProofVerifier:
    """
    Validates signed proof bundles and mints delivery events.

    Checks run in a fixed order and stop at the first failure:
    structure, session, challenge, secret binding, signature. Only when all
    pass does a single store transaction consume the challenge, complete the
    session and write the event.
    """

    def __init__(
        self,
        store: StorageBackend,
        sessions: SessionManager,
        challenges: ChallengeIssuer,
        identities: IdentityRegistry,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.sessions = sessions
        self.challenges = challenges
        self.identities = identities
        self.clock = clock

    def verify(
        self,
        bundle: BundleInput,
        evidence_hashes: Optional[Iterable[str]] = None,
        session_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> DeliveryEvent:
        # 1. structure
        bundle = self._coerce_bundle(bundle)
        message = ProofMessage.parse(bundle.message)
        signature = bundle.signature_bytes()
        evidence = validate_evidence_hashes(evidence_hashes)
        if session_id is not None and session_id != message.session_id:
            raise MalformedProof("Signed session_id does not match the submitted session_id")
        if actor_id is not None and actor_id != message.actor_id:
            raise MalformedProof("Signed actor_id does not match the submitted actor_id")

        # 2. session
        session = self._check_session(message)

        # 3. challenge
        challenge = self._check_challenge(message)

        # 4. secret binding
        expected = secret_hash(session.secret)
        if not hmac.compare_digest(normalize_secret_hash(message.secret_hash).encode(), expected.encode()):
            raise SecretMismatch("Proof does not carry the session's proximity secret")

        # 5. signature over the bytes as received
        self._check_signature(message.actor_id, signature, bundle.message.encode("utf-8"))

        # 6. consume + mint, atomically
        event = DeliveryEvent(
            id=new_id("evt"),
            session_id=session.id,
            subject_id=session.subject_id,
            principal_id=session.principal_id,
            actor_id=message.actor_id,
            secret_hash=expected,
            challenge_nonce=challenge.nonce,
            signature=signature.hex(),
            message=bundle.message,
            proof_timestamp=message.timestamp,
            received_at=iso_from_ms(self.clock()),
            evidence_hashes=evidence,
            state=EventState.PENDING,
        )
        with self.store.transaction():
            if not self.store.mark_challenge_used(challenge.id):
                raise ChallengeUsed(f"Challenge {challenge.id} was already consumed")
            if not self.store.set_session_state(session.id, SessionState.COMPLETED, expected=SessionState.ACTIVE):
                raise SessionNotActive(f"Session '{session.id}' was completed by another proof")
            self.store.create_delivery_event(event)

        logger.info(
            "Delivery event %s minted for session %s by actor %s",
            event.id, session.id, message.actor_id,
        )
        return event

    @staticmethod
    def _coerce_bundle(bundle: BundleInput) -> ProofBundle:
        if isinstance(bundle, ProofBundle):
            return bundle
        if isinstance(bundle, str):
            return ProofBundle.decode(bundle)
        return ProofBundle.from_dict(bundle)

    def _check_session(self, message: ProofMessage) -> Session:
        session = self.sessions.lookup(message.session_id)
        if session.is_expired(self.clock()):
            raise SessionExpired(f"Session '{session.id}' expired")
        if session.state is not SessionState.ACTIVE:
            used = self.store.find_challenge_by_nonce(session.id, message.actor_id, message.challenge_nonce)
            if used is not None and used.used:
                raise ChallengeReplayed(f"Challenge nonce for session '{session.id}' was already consumed")
            raise SessionNotActive(f"Session '{session.id}' is {session.state.value}")
        return session

    def _check_challenge(self, message: ProofMessage) -> Challenge:
        try:
            challenge = self.challenges.latest_unused(message.session_id, message.actor_id)
        except ChallengeNotFound:
            if self._nonce_consumed(message):
                raise ChallengeUsed("Challenge nonce was already consumed")
            raise
        if challenge.is_expired(self.clock()):
            raise ChallengeExpired(f"Challenge {challenge.id} expired")
        if not hmac.compare_digest(challenge.nonce.encode(), message.challenge_nonce.encode()):
            if self._nonce_consumed(message):
                raise ChallengeUsed("Challenge nonce was already consumed")
            raise NonceMismatch("Signed nonce is not the latest challenge issued to this actor")
        return challenge

    def _nonce_consumed(self, message: ProofMessage) -> bool:
        prior = self.store.find_challenge_by_nonce(message.session_id, message.actor_id, message.challenge_nonce)
        return prior is not None and prior.used

    def _check_signature(self, actor_id: str, signature: bytes, data: bytes) -> None:
        identity = self.identities.get_active(actor_id)
        if identity is None:
            raise SignatureInvalid(f"No active key registered for actor '{actor_id}'")
        try:
            public_key = load_public_key(identity.public_key, identity.key_kind)
        except ValueError as e:
            raise SignatureInvalid(f"Registered key for '{actor_id}' is unusable: {e}")
        if not verify_signature(public_key, signature, data):
            raise SignatureInvalid("Signature does not verify against the registered key")
