# handoff/core/encoding.py
import base64
import binascii
import re

_HEX_RE = re.compile(r"^[0-9a-fA-F]*$")


def b64url_decode(s: str) -> bytes:
    """Decode base64url string back to bytes."""
    # Restore padding
    padding = len(s) % 4
    if padding:
        s += "=" * (4 - padding)
    return base64.urlsafe_b64decode(s)


def b64_decode_any(s: str) -> bytes:
    """Decode standard or URL-safe base64, padded or not. Raises ValueError."""
    s = s.strip()
    try:
        if "-" in s or "_" in s:
            return b64url_decode(s)
        padding = len(s) % 4
        if padding:
            s += "=" * (4 - padding)
        return base64.b64decode(s, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"invalid base64: {e}") from e


def is_hex(s: str, length: int | None = None) -> bool:
    if not isinstance(s, str) or not _HEX_RE.fullmatch(s):
        return False
    return length is None or len(s) == length


def hex_decode(s: str) -> bytes:
    """Decode a hex string, tolerating an optional 0x prefix. Raises ValueError."""
    if s.startswith(("0x", "0X")):
        s = s[2:]
    if not is_hex(s) or len(s) % 2:
        raise ValueError("invalid hex string")
    return bytes.fromhex(s)
