import threading

import pytest
from fastapi import HTTPException

from app.services.conversation_provisioning import ConversationProvisioner
from app.services.match_service import MatchService
from app.services.match_types import Fault, MatchCriteria, Matched, Rejected, Waiting

from conftest import FakeConversationService, FakeStore

CRITERIA = MatchCriteria(trip_card_id="trip-1")


def _service(store, conversations=None) -> MatchService:
    conversations = conversations or FakeConversationService()
    return MatchService(store=store, pairing=store, provisioner=ConversationProvisioner(conversations, store))


def test_first_traveler_waits_second_gets_conversation(store, conversations, service):
    p1 = store.add_profile("p1")
    store.add_profile("p2")

    first = service.start("p1", CRITERIA)
    second = service.start("p2", CRITERIA)

    assert isinstance(first, Waiting)
    assert first.request_id is not None
    assert isinstance(second, Matched)
    assert second.view.other_profile_id == p1.id
    assert second.view.other_external_identity == "p1"
    assert second.view.conversation_id == "conv-1"
    assert second.reused_conversation is False

    polled = service.poll("p1", first.request_id)
    assert isinstance(polled, Matched)
    assert polled.view.session_id == second.view.session_id
    assert polled.view.conversation_id == "conv-1"
    assert polled.reused_conversation is True
    assert len(conversations.created) == 1


def test_poll_is_idempotent(store, conversations, service):
    store.add_profile("p1")
    store.add_profile("p2")
    first = service.start("p1", CRITERIA)
    service.start("p2", CRITERIA)

    results = [service.poll("p1", first.request_id) for _ in range(3)]

    assert {r.view.conversation_id for r in results} == {"conv-1"}
    assert len(conversations.created) == 1
    assert store.calls["try_match"] == 0


def test_poll_pairs_through_try_match(store):
    store.pair_on_start = False
    store.add_profile("p1")
    store.add_profile("p2")
    service = _service(store)
    first = service.start("p1", CRITERIA)
    service.start("p2", CRITERIA)

    outcome = service.poll("p1", first.request_id)

    assert isinstance(outcome, Matched)
    assert outcome.view.self_slot == "B"
    assert store.calls["try_match"] == 1


def test_start_recovers_session_when_start_result_is_lost():
    store = FakeStore(hide_start_session=True)
    store.add_profile("p1")
    store.add_profile("p2")
    service = _service(store)
    service.start("p1", CRITERIA)

    outcome = service.start("p2", CRITERIA)

    assert isinstance(outcome, Matched)
    assert outcome.view.other_external_identity == "p1"


def test_start_ignores_sessions_older_than_the_new_request(store, service):
    p1 = store.add_profile("p1")
    old_peer = store.add_profile("old")
    store.add_session(p1, old_peer)
    store.pair_on_start = False

    outcome = service.start("p1", CRITERIA)

    assert isinstance(outcome, Waiting)
    assert outcome.reason == "no_session_yet"


def test_two_starts_leave_one_waiting_request(store, service):
    p1 = store.add_profile("p1")

    first = service.start("p1", CRITERIA)
    second = service.start("p1", CRITERIA)

    assert first.request_id != second.request_id
    assert [r.id for r in store.waiting_requests(p1.id)] == [second.request_id]


def test_incomplete_profile_rejected(store, service):
    outcome = service.start("newcomer", CRITERIA)

    assert isinstance(outcome, Rejected)
    assert outcome.code == "INCOMPLETE_PROFILE"
    assert store.requests == {}


def test_pairing_store_error_is_business_error(store, service):
    store.add_profile("p1")
    store.fail_pairing = True

    outcome = service.start("p1", CRITERIA)

    assert isinstance(outcome, Rejected)
    assert outcome.code == "MATCH_STORE_ERROR"


def test_poll_foreign_request_forbidden(store, service):
    store.add_profile("p1")
    store.add_profile("p2")
    first = service.start("p1", CRITERIA)

    with pytest.raises(HTTPException) as exc:
        service.poll("p2", first.request_id)
    assert exc.value.status_code == 403


def test_poll_unknown_request_not_found(store, service):
    store.add_profile("p1")

    with pytest.raises(HTTPException) as exc:
        service.poll("p1", "request-missing")
    assert exc.value.status_code == 404


def test_poll_cancelled_request_not_waiting(store, service):
    store.add_profile("p1")
    first = service.start("p1", CRITERIA)
    service.cancel("p1", first.request_id)

    outcome = service.poll("p1", first.request_id)

    assert isinstance(outcome, Rejected)
    assert outcome.code == "REQUEST_NOT_WAITING"
    assert store.calls["try_match"] == 0


def test_poll_failure_marks_request_failed(store, service, monkeypatch):
    store.add_profile("p1")
    first = service.start("p1", CRITERIA)

    def boom(request_id):
        raise RuntimeError("db gone")

    monkeypatch.setattr(store, "try_match", boom)

    outcome = service.poll("p1", first.request_id)

    assert isinstance(outcome, Fault)
    assert store.get_request(first.request_id).status == "failed"


def test_conversation_outage_is_retryable(store):
    store.add_profile("p1")
    store.add_profile("p2")
    conversations = FakeConversationService(fail=True)
    service = _service(store, conversations)
    first = service.start("p1", CRITERIA)

    outcome = service.start("p2", CRITERIA)
    assert isinstance(outcome, Rejected)
    assert outcome.code == "CONVERSATION_UNAVAILABLE"

    conversations.fail = False
    recovered = service.poll("p1", first.request_id)
    assert isinstance(recovered, Matched)
    assert recovered.view.conversation_id == "conv-1"


def test_heartbeat_never_provisions(store):
    store.add_profile("p1")
    store.add_profile("p2")
    failing = FakeConversationService(fail=True)
    service = _service(store, failing)
    first = service.start("p1", CRITERIA)
    service.start("p2", CRITERIA)
    calls_before = failing.calls

    outcome = service.heartbeat("p1", first.request_id)

    assert isinstance(outcome, Waiting)
    assert outcome.reason == "conversation_pending"
    assert outcome.other_external_identity == "p2"
    assert failing.calls == calls_before


def test_heartbeat_keeps_waiting_request_alive(store, service):
    store.add_profile("p1")
    first = service.start("p1", CRITERIA)

    outcome = service.heartbeat("p1", first.request_id)

    assert isinstance(outcome, Waiting)
    assert store.calls["touch_request"] == 1


def test_cancel_after_match_keeps_session(store, service):
    store.add_profile("p1")
    store.add_profile("p2")
    first = service.start("p1", CRITERIA)
    matched = service.start("p2", CRITERIA)

    result = service.cancel("p1", first.request_id)

    assert result["status"] == "matched"
    assert result["sessionId"] == matched.view.session_id
    assert store.get_session(matched.view.session_id).conversation_id == "conv-1"


def test_cancel_without_request_id_cancels_active(store, service):
    store.add_profile("p1")
    first = service.start("p1", CRITERIA)

    result = service.cancel("p1", None)

    assert result == {"status": "cancelled", "requestId": first.request_id, "cancelledRequestIds": [first.request_id]}


def test_get_partner_rejects_foreign_self_profile(store, service):
    store.add_profile("p1")
    store.add_profile("p2")
    service.start("p1", CRITERIA)
    matched = service.start("p2", CRITERIA)

    with pytest.raises(HTTPException) as exc:
        service.get_partner("p2", matched.view.session_id, self_profile_id="profile-someone-else")
    assert exc.value.status_code == 403

    view = service.get_partner("p2", matched.view.session_id)
    assert view.other_external_identity == "p1"


def test_attach_conversation_first_writer_wins_unless_forced(store, service):
    a = store.add_profile("p1")
    b = store.add_profile("p2")
    session = store.add_session(a, b)

    first = service.attach_conversation("p1", session.id, "conv-a", force=False)
    second = service.attach_conversation("p2", session.id, "conv-b", force=False)
    forced = service.attach_conversation("p2", session.id, "conv-c", force=True)

    assert first.conversation_id == "conv-a"
    assert second.conversation_id == "conv-a"
    assert forced.conversation_id == "conv-c"


def test_attach_conversation_outsider_forbidden(store, service):
    session = store.add_session(store.add_profile("p1"), store.add_profile("p2"))
    store.add_profile("p3")

    with pytest.raises(HTTPException) as exc:
        service.attach_conversation("p3", session.id, "conv-x", force=True)
    assert exc.value.status_code == 403


def test_provision_pending_sweeps_sessions(store, conversations, service):
    store.add_session(store.add_profile("p1"), store.add_profile("p2"))
    store.add_session(store.add_profile("p3"), store.add_profile(None))
    store.add_session(store.add_profile("p4"), store.add_profile("p5"), conversation_id="conv-existing")

    summary = service.provision_pending(limit=10)

    assert summary == {"scanned": 2, "attached": 1, "skipped": 1, "errors": 0}
    assert len(conversations.created) == 1


def test_criteria_for_persists_submitted_preferences(store, service):
    criteria = service.criteria_for("p1", "trip-1", {}, {"preferredGender": "female"})
    assert criteria.preferred_gender == "female"
    assert store.preferences["p1"] == {"preferredGender": "female"}

    later = service.criteria_for("p1", "trip-2", {"preferredGender": None})
    assert later.preferred_gender is None
    assert service.criteria_for("p1", "trip-3", {}).preferred_gender == "female"


def test_concurrent_polls_converge_on_one_session_and_conversation(store, conversations, service):
    store.pair_on_start = False
    store.add_profile("p1")
    store.add_profile("p2")
    requests = {
        "p1": service.start("p1", CRITERIA).request_id,
        "p2": service.start("p2", CRITERIA).request_id,
    }
    barrier = threading.Barrier(2)
    first_round = {}

    def run(identity):
        barrier.wait()
        first_round[identity] = service.poll(identity, requests[identity])

    threads = [threading.Thread(target=run, args=(identity,)) for identity in requests]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not any(isinstance(o, (Fault, Rejected)) for o in first_round.values())
    settled = {identity: service.poll(identity, rid) for identity, rid in requests.items()}

    assert len(store.sessions) == 1
    assert len(conversations.created) == 1
    assert all(isinstance(o, Matched) for o in settled.values())
    assert settled["p1"].view.session_id == settled["p2"].view.session_id
    assert settled["p1"].view.conversation_id == settled["p2"].view.conversation_id == "conv-1"
    assert {o.view.self_slot for o in settled.values()} == {"A", "B"}
