import itertools
import threading
from collections import Counter
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from app.services.contracts import ConversationError, PairingUnavailable
from app.services.conversation_provisioning import ConversationProvisioner
from app.services.match_service import MatchService
from app.services.match_types import (
    OPEN_SESSION_STATUSES,
    REQUEST_CANCELLED,
    REQUEST_FAILED,
    REQUEST_MATCHED,
    REQUEST_WAITING,
    SESSION_MATCHED,
    SESSION_PENDING,
    ConversationRef,
    MatchRequest,
    MatchSession,
    Profile,
)

COMPLETE_PROFILE = {
    "gender": "female",
    "age": 29,
    "first_language": "en",
    "second_language": "ja",
    "home_city": "Osaka",
}


class FakeStore:
    """
    In-memory stand-in for the SQL store and the pairing procedures.

    Pairing is first-come: a new request is paired with the oldest waiting
    request of another profile. ``hide_start_session`` makes ``start_match``
    pair without reporting the session, the way a lost response would.
    """

    def __init__(self, *, pair_on_start: bool = True, hide_start_session: bool = False) -> None:
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._clock = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
        self.pair_on_start = pair_on_start
        self.hide_start_session = hide_start_session
        self.fail_pairing = False
        self.profiles: dict[str, Profile] = {}
        self.requests: dict[str, MatchRequest] = {}
        self.sessions: dict[str, MatchSession] = {}
        self.preferences: dict[str, dict] = {}
        self.calls: Counter = Counter()

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    # -- test helpers ----------------------------------------------------

    def add_profile(self, identity: str | None, complete: bool = True, **fields) -> Profile:
        data = dict(COMPLETE_PROFILE) if complete else {}
        data.update(fields)
        profile = Profile(id=self._next_id("profile"), external_identity=identity, is_completed=complete, **data)
        self.profiles[profile.id] = profile
        return profile

    def add_session(self, profile_a: Profile, profile_b: Profile, **fields) -> MatchSession:
        session = MatchSession(
            id=self._next_id("session"),
            profile_a_id=profile_a.id,
            profile_b_id=profile_b.id,
            created_at=self._tick(),
            **fields,
        )
        self.sessions[session.id] = session
        return session

    def waiting_requests(self, profile_id: str) -> list[MatchRequest]:
        return [r for r in self.requests.values() if r.profile_id == profile_id and r.is_waiting]

    # -- profiles --------------------------------------------------------

    def ensure_profile(self, external_identity: str) -> Profile:
        with self._lock:
            for profile in self.profiles.values():
                if profile.external_identity == external_identity:
                    return profile
            return self.add_profile(external_identity, complete=False)

    def get_profile(self, profile_id: str) -> Profile | None:
        return self.profiles.get(profile_id)

    def set_profile_completed(self, profile_id: str, is_completed: bool) -> None:
        self.profiles[profile_id] = replace(self.profiles[profile_id], is_completed=is_completed)

    # -- requests --------------------------------------------------------

    def get_request(self, request_id: str) -> MatchRequest | None:
        return self.requests.get(request_id)

    def get_latest_request(self, profile_id: str) -> MatchRequest | None:
        owned = [r for r in self.requests.values() if r.profile_id == profile_id]
        return max(owned, key=lambda r: r.created_at) if owned else None

    def list_waiting_requests(self, profile_id: str) -> list[MatchRequest]:
        return sorted(self.waiting_requests(profile_id), key=lambda r: r.created_at, reverse=True)

    def _set_status(self, request_id: str, status: str) -> None:
        self.requests[request_id] = replace(self.requests[request_id], status=status)

    def mark_request_failed(self, request_id: str) -> bool:
        with self._lock:
            request = self.requests.get(request_id)
            if request is None or not request.is_waiting:
                return False
            self._set_status(request_id, REQUEST_FAILED)
            return True

    def touch_request(self, request_id: str, profile_id: str) -> MatchRequest | None:
        self.calls["touch_request"] += 1
        request = self.requests.get(request_id)
        if request is None or request.profile_id != profile_id or not request.is_waiting:
            return None
        return request

    # -- pairing primitive -----------------------------------------------

    def _pair(self, request: MatchRequest) -> MatchSession | None:
        candidates = sorted(
            (r for r in self.requests.values() if r.is_waiting and r.profile_id != request.profile_id),
            key=lambda r: r.created_at,
        )
        if not candidates:
            return None
        other = candidates[0]
        session = MatchSession(
            id=self._next_id("session"),
            profile_a_id=other.profile_id,
            profile_b_id=request.profile_id,
            request_a_id=other.id,
            request_b_id=request.id,
            status=SESSION_PENDING,
            created_at=self._tick(),
        )
        self.sessions[session.id] = session
        self._set_status(other.id, REQUEST_MATCHED)
        self._set_status(request.id, REQUEST_MATCHED)
        return session

    def start_match(self, profile_id, criteria):
        self.calls["start_match"] += 1
        if self.fail_pairing:
            raise PairingUnavailable("start_match failed")
        with self._lock:
            request = MatchRequest(
                id=self._next_id("request"),
                profile_id=profile_id,
                status=REQUEST_WAITING,
                trip_card_id=criteria.trip_card_id,
                created_at=self._tick(),
            )
            self.requests[request.id] = request
            session = self._pair(request) if self.pair_on_start else None
        return None if self.hide_start_session else session

    def try_match(self, request_id):
        self.calls["try_match"] += 1
        if self.fail_pairing:
            raise PairingUnavailable("try_match failed")
        with self._lock:
            request = self.requests[request_id]
            if not request.is_waiting:
                return None
            return self._pair(request)

    def cancel_match(self, request_id):
        self.calls["cancel_match"] += 1
        with self._lock:
            if self.requests[request_id].is_waiting:
                self._set_status(request_id, REQUEST_CANCELLED)

    def get_active_request(self, profile_id):
        waiting = self.list_waiting_requests(profile_id)
        return waiting[0] if waiting else None

    # -- sessions --------------------------------------------------------

    def get_session(self, session_id: str) -> MatchSession | None:
        return self.sessions.get(session_id)

    def find_session_by_request(self, request_id: str) -> MatchSession | None:
        for session in self.sessions.values():
            if request_id in (session.request_a_id, session.request_b_id) and session.status in OPEN_SESSION_STATUSES:
                return session
        return None

    def find_open_session_for_profile(self, profile_id, since=None):
        found = [
            s
            for s in self.sessions.values()
            if profile_id in (s.profile_a_id, s.profile_b_id)
            and s.status in OPEN_SESSION_STATUSES
            and (since is None or s.created_at >= since)
        ]
        return max(found, key=lambda s: s.created_at) if found else None

    def list_sessions_missing_conversation(self, limit: int) -> list[MatchSession]:
        missing = [s for s in self.sessions.values() if not s.conversation_id and s.status in OPEN_SESSION_STATUSES]
        return missing[:limit]

    def attach_conversation(self, session_id, conversation_id, force):
        self.calls["attach_conversation"] += 1
        with self._lock:
            session = self.sessions.get(session_id)
            if session is None:
                return None
            if force or session.conversation_id in (None, conversation_id):
                session = replace(session, conversation_id=conversation_id, status=SESSION_MATCHED)
                self.sessions[session_id] = session
            return session

    # -- preferences -----------------------------------------------------

    def fetch_match_preferences(self, external_identity):
        return dict(self.preferences.get(external_identity, {}))

    def upsert_match_preferences(self, external_identity, preferences):
        self.preferences[external_identity] = dict(preferences)


class FakeConversationService:
    """Hands out one conversation per uniqueness key, like a ``unique`` create."""

    def __init__(self, *, fail: bool = False) -> None:
        self._lock = threading.Lock()
        self.fail = fail
        self.by_key: dict[str, str] = {}
        self.created: list[dict] = []
        self.calls = 0

    def create(self, members, name, attributes, uniqueness_key):
        with self._lock:
            self.calls += 1
            if self.fail:
                raise ConversationError("chat service down")
            existing = self.by_key.get(uniqueness_key)
            if existing:
                return ConversationRef(conversation_id=existing, reused=True)
            conversation_id = f"conv-{len(self.by_key) + 1}"
            self.by_key[uniqueness_key] = conversation_id
            self.created.append({"members": members, "name": name, "attributes": attributes, "key": uniqueness_key})
            return ConversationRef(conversation_id=conversation_id, reused=False)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def conversations():
    return FakeConversationService()


@pytest.fixture
def service(store, conversations):
    return MatchService(store=store, pairing=store, provisioner=ConversationProvisioner(conversations, store))
