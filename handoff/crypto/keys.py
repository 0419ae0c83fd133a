# handoff/crypto/keys.py
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature, encode_dss_signature

from handoff.core.encoding import hex_decode
from handoff.core.types import KeyKind

PublicKey = Union[ec.EllipticCurvePublicKey, Ed25519PublicKey]
PrivateKey = Union[ec.EllipticCurvePrivateKey, Ed25519PrivateKey]

SIGNATURE_BYTES = 64


def load_public_key(public_key_hex: str, kind: KeyKind = KeyKind.SECP256K1) -> PublicKey:
    """
    Parse a hex-encoded public key.
    secp256k1: SEC1 point, 65 bytes uncompressed or 33 bytes compressed.
    ed25519: 32 raw bytes.
    Raises ValueError on anything else.
    """
    kind = KeyKind(kind)
    raw = hex_decode(public_key_hex.strip())
    if kind is KeyKind.SECP256K1:
        if len(raw) not in (33, 65):
            raise ValueError(f"secp256k1 public key must be 33 or 65 bytes, got {len(raw)}")
        return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), raw)
    if len(raw) != 32:
        raise ValueError(f"ed25519 public key must be 32 bytes, got {len(raw)}")
    return Ed25519PublicKey.from_public_bytes(raw)


def verify_signature(public_key: PublicKey, signature: bytes, data: bytes) -> bool:
    """Verify a 64-byte signature (r||s for ECDSA/SHA-256, native for Ed25519) over data."""
    if len(signature) != SIGNATURE_BYTES:
        return False
    try:
        if isinstance(public_key, Ed25519PublicKey):
            public_key.verify(signature, data)
        else:
            r = int.from_bytes(signature[:32], "big")
            s = int.from_bytes(signature[32:], "big")
            public_key.verify(encode_dss_signature(r, s), data, ec.ECDSA(hashes.SHA256()))
    except InvalidSignature:
        return False
    return True


@dataclass
class ActorKeyPair:
    """
    Delivery actor key pair. Holds only the public half when loaded for verification.
    The private half never leaves the actor's device in production; here it backs
    simulators and tests.
    """
    kind: KeyKind
    public_key: PublicKey
    private_key: Optional[PrivateKey] = None

    @classmethod
    def generate(cls, kind: KeyKind = KeyKind.SECP256K1) -> "ActorKeyPair":
        kind = KeyKind(kind)
        if kind is KeyKind.SECP256K1:
            priv = ec.generate_private_key(ec.SECP256K1())
        else:
            priv = Ed25519PrivateKey.generate()
        return cls(kind=kind, public_key=priv.public_key(), private_key=priv)

    def public_key_bytes(self) -> bytes:
        if self.kind is KeyKind.SECP256K1:
            return self.public_key.public_bytes(
                serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
            )
        return self.public_key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)

    def public_key_hex(self) -> str:
        return self.public_key_bytes().hex()

    def sign_bytes(self, data: bytes) -> bytes:
        """64-byte signature over data. ECDSA signatures are r||s, big-endian, 32 bytes each."""
        if self.private_key is None:
            raise ValueError("Cannot sign with a public-only key pair")
        if self.kind is KeyKind.ED25519:
            return self.private_key.sign(data)
        der = self.private_key.sign(data, ec.ECDSA(hashes.SHA256()))
        r, s = decode_dss_signature(der)
        return r.to_bytes(32, "big") + s.to_bytes(32, "big")

    def sign_hex(self, data: bytes) -> str:
        return self.sign_bytes(data).hex()

    def verify_bytes(self, signature: bytes, data: bytes) -> bool:
        return verify_signature(self.public_key, signature, data)
