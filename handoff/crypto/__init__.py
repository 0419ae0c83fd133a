"""Key handling and hashing primitives."""

from .keys import ActorKeyPair, load_public_key
from .hashing import sha256_hex, secret_hash, anchor_hash

__all__ = ["ActorKeyPair", "load_public_key", "sha256_hex", "secret_hash", "anchor_hash"]
