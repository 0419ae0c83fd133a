# handoff/crypto/hashing.py
import hashlib

from handoff.core.canon import canonical_json
from handoff.core.types import DeliveryEvent

SECRET_HASH_PREFIX = "sha256:"


def sha256_hex(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def secret_hash(secret: str) -> str:
    """Hash of a session secret as embedded in proof messages: sha256:<hex>."""
    return SECRET_HASH_PREFIX + sha256_hex(secret)


def normalize_secret_hash(value: str) -> str:
    """Accept bare hex or sha256:-prefixed, any case; return the canonical prefixed form."""
    v = value.strip().lower()
    if v.startswith(SECRET_HASH_PREFIX):
        v = v[len(SECRET_HASH_PREFIX):]
    return SECRET_HASH_PREFIX + v


def anchor_hash(event: DeliveryEvent) -> str:
    """0x-prefixed SHA-256 over the JCS encoding of the event's non-anchoring fields."""
    return "0x" + sha256_hex(canonical_json(event.anchor_payload()))
