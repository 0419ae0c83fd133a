import pytest
from pathlib import Path

from handoff.anchor.registry import SQLiteAnchorRegistry
from handoff.context import HandoffContext
from handoff.core.clock import iso_from_ms
from handoff.core.config import Policy
from handoff.crypto.keys import ActorKeyPair
from handoff.service import HandoffService
from handoff.storage import SQLiteStorage
from handoff.verify import build_proof

START_MS = 1_767_225_600_000  # 2026-01-01T00:00:00Z


class FakeClock:
    """Injectable clock in epoch millis; tests move it explicitly."""

    def __init__(self, now_ms: int = START_MS):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def policy() -> Policy:
    return Policy(max_session_ttl=3600, default_session_ttl=300, challenge_ttl=60, anchor_backoff=30)


@pytest.fixture
def store(tmp_path: Path) -> SQLiteStorage:
    s = SQLiteStorage(db_path=tmp_path / "handoff.db")
    yield s
    s.close()


@pytest.fixture
def registry(tmp_path: Path, clock: FakeClock) -> SQLiteAnchorRegistry:
    r = SQLiteAnchorRegistry(tmp_path / "anchors.db", clock=clock)
    yield r
    r.close()


@pytest.fixture
def context(store, registry, policy, clock) -> HandoffContext:
    return HandoffContext(store=store, ledger=registry, policy=policy, clock=clock)


@pytest.fixture
def service(context) -> HandoffService:
    return HandoffService(context)


@pytest.fixture
def keys() -> ActorKeyPair:
    return ActorKeyPair.generate()


@pytest.fixture
def registered_actor(service, keys):
    """(actor_id, keys) with the key already registered."""
    service.identities.register("dp_1", keys.public_key_hex())
    return "dp_1", keys


@pytest.fixture
def deliver(service, registered_actor, clock):
    """Run one full handoff through the verifier; returns the minted DeliveryEvent."""
    actor_id, keys = registered_actor

    def _deliver(subject_id: str = "ord_1"):
        session = service.sessions.activate("cus_1", subject_id, ttl=300)
        challenge = service.challenges.issue(session.id, actor_id)
        bundle = build_proof(
            keys, session.id, session.secret, challenge.nonce, actor_id, iso_from_ms(clock())
        )
        return service.verifier.verify(bundle, ["sha256:" + "ab" * 32])

    return _deliver
