# handoff/core/ids.py
import secrets

ID_BYTES = 16          # 128-bit ids
SECRET_BYTES = 32      # 256-bit session secrets
NONCE_BYTES = 16       # 128-bit challenge nonces


def new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(ID_BYTES)}"


def new_secret() -> str:
    return secrets.token_hex(SECRET_BYTES)


def new_nonce() -> str:
    return secrets.token_hex(NONCE_BYTES)
