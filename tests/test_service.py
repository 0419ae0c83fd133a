import base64
import json

import pytest

from handoff.anchor import LedgerClient
from handoff.context import HandoffContext
from handoff.core.clock import iso_from_ms
from handoff.crypto.hashing import secret_hash
from handoff.crypto.keys import ActorKeyPair
from handoff.service import HandoffService
from handoff.verify import ProofMessage, build_proof


def ok(result):
    status, body = result
    assert status == 200, body
    return body


def register(service, actor_id="dp_1"):
    keys = ActorKeyPair.generate()
    ok(service.handle("register_identity", {"actor_id": actor_id, "public_key": keys.public_key_hex()}))
    return keys


def test_full_handoff_scenario(service, clock, registry):
    keys = register(service)

    session = ok(service.handle("activate_session", {
        "principal_id": "cus_1", "subject_id": "ord_1", "ttl_seconds": 300, "secret_kind": "BLE",
    }))
    assert session["secret_kind"] == "BLE"
    assert session["ttl_seconds"] == 300
    assert session["expires_at"] == iso_from_ms(clock() + 300_000)

    challenge = ok(service.handle("issue_challenge", {"session_id": session["session_id"], "actor_id": "dp_1"}))
    assert len(challenge["nonce"]) == 32

    clock.advance(5)
    bundle = build_proof(
        keys, session["session_id"], session["secret"], challenge["nonce"], "dp_1", iso_from_ms(clock())
    )
    submitted = ok(service.handle("submit_proof", {
        "session_id": session["session_id"],
        "actor_id": "dp_1",
        "proof_bundle": {"message": bundle.message, "signature": bundle.signature},
        "evidence_hashes": ["sha256:" + "cd" * 32],
    }))
    assert submitted["status"] == "verified"
    assert submitted["anchor_state"] == "anchored"
    assert submitted["ledger_ref"]

    report = ok(service.handle("verify_event", {"event_id": submitted["event_id"]}))
    assert report["valid"] is True
    assert report["ledger_confirmed"] is True
    assert report["subject_id"] == "ord_1"
    assert registry.count() == 1

    # replaying the same bundle is refused without a second event
    status, body = service.handle("submit_proof", {
        "session_id": session["session_id"],
        "actor_id": "dp_1",
        "proof_bundle": {"message": bundle.message, "signature": bundle.signature},
    })
    assert status == 400
    assert body["error"] == "challenge_used"
    assert len(service.context.store.list_events()) == 1


def test_submit_proof_accepts_base64_blob(service, clock):
    keys = register(service)
    session = ok(service.handle("activate_session", {"principal_id": "cus_1", "subject_id": "ord_1"}))
    challenge = ok(service.handle("issue_challenge", {"session_id": session["session_id"], "actor_id": "dp_1"}))
    bundle = build_proof(
        keys, session["session_id"], session["secret"], challenge["nonce"], "dp_1", iso_from_ms(clock())
    )
    blob = base64.b64encode(json.dumps({"message": bundle.message, "signature": bundle.signature}).encode()).decode()
    body = ok(service.handle("submit_proof", {
        "session_id": session["session_id"], "actor_id": "dp_1", "proof_bundle": blob,
    }))
    assert body["status"] == "verified"


def test_proof_accepted_when_ledger_is_down(store, policy, clock):
    context = HandoffContext(store=store, ledger=None, policy=policy, clock=clock)
    service = HandoffService(context)
    keys = register(service)
    session = service.sessions.activate("cus_1", "ord_1", ttl=300)
    challenge = service.challenges.issue(session.id, "dp_1")
    bundle = build_proof(keys, session.id, session.secret, challenge.nonce, "dp_1", iso_from_ms(clock()))

    body = ok(service.handle("submit_proof", {
        "session_id": session.id, "actor_id": "dp_1",
        "proof_bundle": {"message": bundle.message, "signature": bundle.signature},
    }))
    assert body["anchor_state"] == "pending"
    assert body["ledger_ref"] is None


@pytest.mark.parametrize("operation, body, status, error", [
    ("activate_session", {"principal_id": "cus_1", "subject_id": "ord_1", "ttl_seconds": 0}, 400, "invalid_input"),
    ("activate_session", {"principal_id": "cus_1", "subject_id": "ord_1", "ttl_seconds": "60"}, 400, "invalid_input"),
    ("activate_session", {"principal_id": "cus_1", "subject_id": "ord_1", "secret_kind": "NFC"}, 400, "invalid_input"),
    ("activate_session", {"principal_id": "cus_1", "subject_id": "ord_1", "extra": 1}, 400, "invalid_input"),
    ("activate_session", None, 400, "invalid_input"),
    ("issue_challenge", {"session_id": "s_missing", "actor_id": "dp_1"}, 404, "session_not_found"),
    ("verify_event", {"event_id": "evt_missing"}, 404, "event_not_found"),
    ("register_identity", {"actor_id": "bad id!", "public_key": "02" + "11" * 32}, 400, "invalid_input"),
])
def test_error_status_mapping(service, operation, body, status, error):
    got_status, got_body = service.handle(operation, body)
    assert got_status == status
    assert got_body["error"] == error
    assert got_body["message"]


def test_signature_and_secret_failures_map_to_auth_statuses(service, clock):
    register(service)
    session = service.sessions.activate("cus_1", "ord_1", ttl=300)
    challenge = service.challenges.issue(session.id, "dp_1")
    stranger = ActorKeyPair.generate()

    forged = build_proof(stranger, session.id, session.secret, challenge.nonce, "dp_1", iso_from_ms(clock()))
    status, body = service.handle("submit_proof", {
        "session_id": session.id, "actor_id": "dp_1",
        "proof_bundle": {"message": forged.message, "signature": forged.signature},
    })
    assert (status, body["error"]) == (401, "signature_invalid")

    wrong_secret = build_proof(stranger, session.id, "00" * 32, challenge.nonce, "dp_1", iso_from_ms(clock()))
    status, body = service.handle("submit_proof", {
        "session_id": session.id, "actor_id": "dp_1",
        "proof_bundle": {"message": wrong_secret.message, "signature": wrong_secret.signature},
    })
    assert (status, body["error"]) == (403, "secret_mismatch")


def test_duplicate_registration_conflicts(service):
    keys = register(service)
    status, body = service.handle("register_identity", {"actor_id": "dp_1", "public_key": keys.public_key_hex()})
    assert status == 409
    assert body["error"] == "duplicate_registration"


def test_unknown_operation(service):
    status, body = service.handle("delete_everything", {})
    assert status == 404
    assert body["error"] == "unknown_operation"


def test_unexpected_errors_become_500(service, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(service.sessions, "activate", boom)
    status, body = service.handle("activate_session", {"principal_id": "cus_1", "subject_id": "ord_1"})
    assert status == 500
    assert "disk on fire" not in body["message"]


def test_health(service):
    body = ok(service.handle("health", None))
    assert body["status"] == "ok"
    assert body["store"] is True
    assert body["ledger"] == "configured"


@pytest.mark.parametrize("field, value", [
    ("challenge_nonce", "noncé"),
    ("secret_hash", "sha256:é"),
])
def test_non_ascii_proof_fields_are_rejected_as_malformed(service, clock, field, value):
    keys = register(service)
    session = service.sessions.activate("cus_1", "ord_1", ttl=300)
    challenge = service.challenges.issue(session.id, "dp_1")
    fields = {
        "session_id": session.id,
        "secret_hash": secret_hash(session.secret),
        "challenge_nonce": challenge.nonce,
        "actor_id": "dp_1",
        "timestamp": iso_from_ms(clock()),
        field: value,
    }
    message = ProofMessage(**fields).to_message()

    status, body = service.handle("submit_proof", {
        "session_id": session.id, "actor_id": "dp_1",
        "proof_bundle": {"message": message, "signature": keys.sign_hex(message.encode("utf-8"))},
    })
    assert status == 400
    assert body["error"] == "malformed_proof"


class ResetLedger(LedgerClient):
    def submit_anchor(self, anchor_hash, correlation_id):
        raise ConnectionError("connection reset by peer")

    def is_anchored(self, anchor_hash):
        return False


def test_proof_accepted_when_ledger_client_crashes(store, policy, clock):
    service = HandoffService(HandoffContext(store=store, ledger=ResetLedger(), policy=policy, clock=clock))
    keys = register(service)
    session = service.sessions.activate("cus_1", "ord_1", ttl=300)
    challenge = service.challenges.issue(session.id, "dp_1")
    bundle = build_proof(keys, session.id, session.secret, challenge.nonce, "dp_1", iso_from_ms(clock()))

    body = ok(service.handle("submit_proof", {
        "session_id": session.id, "actor_id": "dp_1",
        "proof_bundle": {"message": bundle.message, "signature": bundle.signature},
    }))
    assert body["status"] == "verified"
    assert body["anchor_state"] == "anchor_failed"
    assert store.get_delivery_event(body["event_id"]).anchor_attempts == 1
