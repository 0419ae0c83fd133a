# handoff/identity/registry.py
import logging
import re
from typing import Optional

from handoff.core.clock import Clock, system_clock
from handoff.core.errors import ActorNotRegistered, IdentityNotFound, InvalidInput
from handoff.core.types import Identity, IdentityStatus, KeyKind
from handoff.crypto.keys import PublicKey, load_public_key
from handoff.storage import StorageBackend

logger = logging.getLogger(__name__)

ACTOR_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def validate_actor_id(actor_id: str) -> str:
    if not isinstance(actor_id, str) or not ACTOR_ID_RE.match(actor_id):
        raise InvalidInput("actor_id must be 1-128 characters of [A-Za-z0-9_-]")
    return actor_id


class IdentityRegistry:
    """One immutable public key per delivery actor. Registration is write-once."""

    def __init__(self, store: StorageBackend, clock: Clock = system_clock):
        self.store = store
        self.clock = clock

    def register(self, actor_id: str, public_key: str, key_kind: KeyKind = KeyKind.SECP256K1) -> Identity:
        validate_actor_id(actor_id)
        try:
            kind = KeyKind(key_kind)
        except ValueError:
            raise InvalidInput(f"Unsupported key kind: {key_kind!r}")
        if not isinstance(public_key, str) or not public_key.strip():
            raise InvalidInput("public_key must be a non-empty string")

        normalized = public_key.strip().lower()
        if normalized.startswith("0x"):
            normalized = normalized[2:]
        try:
            load_public_key(normalized, kind)
        except ValueError as e:
            raise InvalidInput(f"Malformed {kind.value} public key: {e}")

        identity = Identity(
            actor_id=actor_id,
            public_key=normalized,
            key_kind=kind,
            registered_at=self.clock(),
            status=IdentityStatus.ACTIVE,
        )
        # DuplicateRegistration propagates from the store
        self.store.register_identity(identity)
        logger.info("Registered actor %s (%s key %s...)", actor_id, kind.value, normalized[:16])
        return identity

    def get(self, actor_id: str) -> Identity:
        identity = self.store.get_identity(actor_id)
        if identity is None:
            raise IdentityNotFound(f"No identity registered for '{actor_id}'")
        return identity

    def get_active(self, actor_id: str) -> Optional[Identity]:
        identity = self.store.get_identity(actor_id)
        if identity is None or not identity.is_active:
            return None
        return identity

    def require_active(self, actor_id: str) -> Identity:
        identity = self.get_active(actor_id)
        if identity is None:
            raise ActorNotRegistered(f"Delivery actor '{actor_id}' has no active key")
        return identity

    def public_key_for(self, actor_id: str) -> Optional[PublicKey]:
        identity = self.get_active(actor_id)
        if identity is None:
            return None
        return load_public_key(identity.public_key, identity.key_kind)

    def revoke(self, actor_id: str) -> Identity:
        identity = self.get(actor_id)
        self.store.set_identity_status(actor_id, IdentityStatus.REVOKED)
        logger.info("Revoked actor %s", actor_id)
        return self.get(identity.actor_id)
