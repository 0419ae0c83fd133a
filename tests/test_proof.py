import json
import threading

import pytest

from handoff.core.clock import iso_from_ms
from handoff.core.errors import (
    ChallengeExpired,
    ChallengeInvalid,
    ChallengeNotFound,
    ChallengeUsed,
    HandoffError,
    InvalidInput,
    MalformedProof,
    NonceMismatch,
    SecretMismatch,
    SessionExpired,
    SessionInvalid,
    SessionNotFound,
    SignatureInvalid,
)
from handoff.core.ids import new_secret
from handoff.core.types import EventState, KeyKind, SessionState
from handoff.crypto.hashing import secret_hash
from handoff.crypto.keys import ActorKeyPair
from handoff.verify import ProofBundle, ProofMessage, build_proof


def start_handoff(service, actor_id, ttl=300):
    session = service.sessions.activate("cus_1", "ord_1", ttl=ttl)
    challenge = service.challenges.issue(session.id, actor_id)
    return session, challenge


def sign(keys, session, challenge, actor_id, clock, secret=None):
    return build_proof(
        keys, session.id, secret or session.secret, challenge.nonce, actor_id, iso_from_ms(clock()),
    )


def test_happy_path_mints_event(service, registered_actor, clock, store):
    actor_id, keys = registered_actor
    session, challenge = start_handoff(service, actor_id)
    bundle = sign(keys, session, challenge, actor_id, clock)

    event = service.verifier.verify(bundle, ["sha256:photo"], session_id=session.id, actor_id=actor_id)

    assert event.session_id == session.id
    assert event.subject_id == "ord_1"
    assert event.principal_id == "cus_1"
    assert event.actor_id == actor_id
    assert event.secret_hash == secret_hash(session.secret)
    assert event.challenge_nonce == challenge.nonce
    assert event.message == bundle.message
    assert event.evidence_hashes == ["sha256:photo"]
    assert event.state is EventState.PENDING

    assert store.get_session(session.id).state is SessionState.COMPLETED
    assert store.get_challenge(challenge.id).used is True
    assert store.get_delivery_event(event.id) == event


def test_base64_blob_and_dict_forms(service, registered_actor, clock):
    actor_id, keys = registered_actor
    session, challenge = start_handoff(service, actor_id)
    blob = sign(keys, session, challenge, actor_id, clock).encode()
    assert service.verifier.verify(blob).session_id == session.id

    session, challenge = start_handoff(service, actor_id)
    bundle = sign(keys, session, challenge, actor_id, clock)
    event = service.verifier.verify({"message": bundle.message, "signature": bundle.signature})
    assert event.session_id == session.id


def test_ed25519_actor(service, clock):
    keys = ActorKeyPair.generate(KeyKind.ED25519)
    service.identities.register("dp_ed", keys.public_key_hex(), KeyKind.ED25519)
    session, challenge = start_handoff(service, "dp_ed")
    event = service.verifier.verify(sign(keys, session, challenge, "dp_ed", clock))
    assert event.actor_id == "dp_ed"


def test_secret_mismatch_even_with_valid_signature(service, registered_actor, clock, store):
    actor_id, keys = registered_actor
    session, challenge = start_handoff(service, actor_id)
    bundle = sign(keys, session, challenge, actor_id, clock, secret=new_secret())

    with pytest.raises(SecretMismatch):
        service.verifier.verify(bundle)
    assert store.get_session(session.id).state is SessionState.ACTIVE
    assert store.get_challenge(challenge.id).used is False


def test_bare_hex_secret_hash_accepted(service, registered_actor, clock):
    actor_id, keys = registered_actor
    session, challenge = start_handoff(service, actor_id)
    message = ProofMessage(
        session_id=session.id,
        secret_hash=secret_hash(session.secret).split(":", 1)[1],
        challenge_nonce=challenge.nonce,
        actor_id=actor_id,
        timestamp=iso_from_ms(clock()),
    ).to_message()
    bundle = ProofBundle(message, keys.sign_hex(message.encode("utf-8")))
    assert service.verifier.verify(bundle).secret_hash == secret_hash(session.secret)


def test_signature_by_other_key_rejected(service, registered_actor, clock):
    actor_id, _ = registered_actor
    session, challenge = start_handoff(service, actor_id)
    bundle = sign(ActorKeyPair.generate(), session, challenge, actor_id, clock)
    with pytest.raises(SignatureInvalid):
        service.verifier.verify(bundle)


def test_tampered_message_rejected(service, registered_actor, clock):
    actor_id, keys = registered_actor
    session, challenge = start_handoff(service, actor_id)
    bundle = sign(keys, session, challenge, actor_id, clock)
    tampered = ProofBundle(bundle.message.replace('"timestamp":"', '"timestamp":"1'), bundle.signature)
    with pytest.raises(SignatureInvalid):
        service.verifier.verify(tampered)


def test_revoked_actor_signature_rejected(service, registered_actor, clock):
    actor_id, keys = registered_actor
    session, challenge = start_handoff(service, actor_id)
    bundle = sign(keys, session, challenge, actor_id, clock)
    service.identities.revoke(actor_id)
    with pytest.raises(SignatureInvalid):
        service.verifier.verify(bundle)


def test_expired_session(service, registered_actor, clock):
    actor_id, keys = registered_actor
    session, challenge = start_handoff(service, actor_id, ttl=30)
    clock.advance(31)
    with pytest.raises(SessionExpired) as exc:
        service.verifier.verify(sign(keys, session, challenge, actor_id, clock))
    assert isinstance(exc.value, SessionInvalid)


def test_unknown_session(service, registered_actor, clock):
    actor_id, keys = registered_actor
    session, challenge = start_handoff(service, actor_id)
    bundle = build_proof(keys, "s_unknown", session.secret, challenge.nonce, actor_id, iso_from_ms(clock()))
    with pytest.raises(SessionNotFound):
        service.verifier.verify(bundle)


def test_expired_challenge(service, registered_actor, clock, policy):
    actor_id, keys = registered_actor
    session, challenge = start_handoff(service, actor_id, ttl=3600)
    clock.advance(policy.challenge_ttl + 1)
    with pytest.raises(ChallengeExpired):
        service.verifier.verify(sign(keys, session, challenge, actor_id, clock))


def test_older_challenge_is_superseded(service, registered_actor, clock):
    actor_id, keys = registered_actor
    session, first = start_handoff(service, actor_id)
    clock.advance(1)
    service.challenges.issue(session.id, actor_id)
    with pytest.raises(NonceMismatch):
        service.verifier.verify(sign(keys, session, first, actor_id, clock))


def test_no_challenge_issued(service, registered_actor, clock):
    actor_id, keys = registered_actor
    session = service.sessions.activate("cus_1", "ord_1", ttl=300)
    bundle = build_proof(keys, session.id, session.secret, "00" * 16, actor_id, iso_from_ms(clock()))
    with pytest.raises(ChallengeNotFound):
        service.verifier.verify(bundle)


def test_sequential_replay_rejected(service, registered_actor, clock, store):
    actor_id, keys = registered_actor
    session, challenge = start_handoff(service, actor_id)
    bundle = sign(keys, session, challenge, actor_id, clock)
    event = service.verifier.verify(bundle)

    with pytest.raises(ChallengeInvalid) as exc:
        service.verifier.verify(bundle)
    assert isinstance(exc.value, ChallengeUsed)
    assert isinstance(exc.value, SessionInvalid)
    assert store.list_events() == [store.get_delivery_event(event.id)]


def test_concurrent_submissions_yield_one_event(service, registered_actor, clock, store):
    actor_id, keys = registered_actor
    session, challenge = start_handoff(service, actor_id)
    bundle = sign(keys, session, challenge, actor_id, clock)

    workers = 6
    barrier = threading.Barrier(workers)
    results, errors = [], []
    lock = threading.Lock()

    def submit():
        barrier.wait()
        try:
            event = service.verifier.verify(bundle)
        except HandoffError as e:
            with lock:
                errors.append(e)
        else:
            with lock:
                results.append(event)

    threads = [threading.Thread(target=submit) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 1
    assert len(errors) == workers - 1
    assert all(isinstance(e, (ChallengeInvalid, SessionInvalid)) for e in errors)
    assert len(store.list_events()) == 1


def test_request_fields_must_match_signed_message(service, registered_actor, clock):
    actor_id, keys = registered_actor
    session, challenge = start_handoff(service, actor_id)
    bundle = sign(keys, session, challenge, actor_id, clock)
    with pytest.raises(MalformedProof):
        service.verifier.verify(bundle, session_id="s_other")
    with pytest.raises(MalformedProof):
        service.verifier.verify(bundle, actor_id="dp_2")


@pytest.mark.parametrize("message", [
    "not json",
    "[1, 2]",
    json.dumps({"session_id": "s_1", "secret_hash": "sha256:00", "challenge_nonce": "aa", "actor_id": "dp_1"}),
    json.dumps({"session_id": 1, "secret_hash": "x", "challenge_nonce": "y", "actor_id": "z", "timestamp": "t"}),
])
def test_malformed_message(service, message):
    with pytest.raises(MalformedProof):
        service.verifier.verify(ProofBundle(message, "00" * 64))


@pytest.mark.parametrize("signature", ["zz" * 64, "ab" * 63, "ab" * 65])
def test_malformed_signature(service, signature):
    message = ProofMessage("s_1", "sha256:" + "00" * 32, "aa", "dp_1", "2026-01-01T00:00:00.000Z").to_message()
    with pytest.raises(MalformedProof):
        service.verifier.verify(ProofBundle(message, signature))


def signed_with(keys, session, challenge, actor_id, clock, **overrides):
    fields = dict(
        session_id=session.id,
        secret_hash=secret_hash(session.secret),
        challenge_nonce=challenge.nonce,
        actor_id=actor_id,
        timestamp=iso_from_ms(clock()),
    )
    fields.update(overrides)
    message = ProofMessage(**fields).to_message()
    return ProofBundle(message, keys.sign_hex(message.encode("utf-8")))


@pytest.mark.parametrize("overrides", [
    {"challenge_nonce": "noncé"},
    {"challenge_nonce": "not-hex"},
    {"secret_hash": "sha256:é"},
    {"secret_hash": "sha256:" + "ab" * 31},
    {"secret_hash": "md5:" + "ab" * 32},
])
def test_non_hex_message_fields_are_malformed(service, registered_actor, clock, store, overrides):
    actor_id, keys = registered_actor
    session, challenge = start_handoff(service, actor_id)
    bundle = signed_with(keys, session, challenge, actor_id, clock, **overrides)

    with pytest.raises(MalformedProof):
        service.verifier.verify(bundle)
    assert store.get_challenge(challenge.id).used is False


def test_undecodable_blob(service):
    with pytest.raises(MalformedProof):
        service.verifier.verify("%%% not base64 %%%")


def test_evidence_hash_limits(service, registered_actor, clock):
    actor_id, keys = registered_actor
    session, challenge = start_handoff(service, actor_id)
    bundle = sign(keys, session, challenge, actor_id, clock)
    with pytest.raises(InvalidInput):
        service.verifier.verify(bundle, ["h"] * 33)
    with pytest.raises(InvalidInput):
        service.verifier.verify(bundle, ["x" * 257])
    assert service.verifier.verify(bundle, ["h"] * 32).evidence_hashes == ["h"] * 32
