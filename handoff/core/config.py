# handoff/core/config.py
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from handoff.core.errors import InvalidInput


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidInput(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class Policy:
    """
    Tunables for sessions, challenges and anchoring. All durations in seconds.
    Resolved from HANDOFF_* environment variables by from_env().
    """
    max_session_ttl: int = 3600
    default_session_ttl: int = 300
    challenge_ttl: int = 60
    anchor_max_attempts: int = 8
    anchor_backoff: int = 30
    anchor_backoff_cap: int = 3600
    ledger_timeout: float = 10.0

    def __post_init__(self):
        if self.max_session_ttl <= 0:
            raise InvalidInput("max_session_ttl must be positive")
        if not 0 < self.default_session_ttl <= self.max_session_ttl:
            raise InvalidInput("default_session_ttl must be within (0, max_session_ttl]")
        if not 0 < self.challenge_ttl < self.max_session_ttl:
            raise InvalidInput("challenge_ttl must be positive and shorter than max_session_ttl")
        if self.anchor_max_attempts < 1:
            raise InvalidInput("anchor_max_attempts must be at least 1")
        if self.anchor_backoff < 0 or self.anchor_backoff_cap < self.anchor_backoff:
            raise InvalidInput("anchor backoff must be non-negative and below its cap")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Policy":
        env = os.environ if env is None else env
        timeout = env.get("HANDOFF_LEDGER_TIMEOUT")
        try:
            ledger_timeout = float(timeout) if timeout else cls.ledger_timeout
        except ValueError:
            raise InvalidInput(f"HANDOFF_LEDGER_TIMEOUT must be a number, got {timeout!r}")
        return cls(
            max_session_ttl=_int_env(env, "HANDOFF_MAX_SESSION_TTL", cls.max_session_ttl),
            default_session_ttl=_int_env(env, "HANDOFF_DEFAULT_SESSION_TTL", cls.default_session_ttl),
            challenge_ttl=_int_env(env, "HANDOFF_CHALLENGE_TTL", cls.challenge_ttl),
            anchor_max_attempts=_int_env(env, "HANDOFF_ANCHOR_MAX_ATTEMPTS", cls.anchor_max_attempts),
            anchor_backoff=_int_env(env, "HANDOFF_ANCHOR_BACKOFF", cls.anchor_backoff),
            ledger_timeout=ledger_timeout,
        )

    def backoff_seconds(self, attempts: int) -> int:
        """Delay before the next anchoring attempt after `attempts` failures."""
        if attempts <= 0:
            return 0
        return min(self.anchor_backoff * (2 ** (attempts - 1)), self.anchor_backoff_cap)


def resolve_db_path(explicit: str | Path | None = None) -> Path:
    """Resolve the record store path: explicit arg, then HANDOFF_DB_PATH, then ./handoff.db."""
    if explicit:
        return Path(explicit).resolve()
    env_path = os.environ.get("HANDOFF_DB_PATH")
    if env_path:
        return Path(env_path).resolve()
    return (Path.cwd() / "handoff.db").resolve()


def resolve_ledger_uri(explicit: Optional[str] = None) -> str:
    if explicit is not None:
        return explicit.strip()
    return os.environ.get("HANDOFF_LEDGER_URI", "").strip()
