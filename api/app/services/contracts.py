"""
Capability interfaces the match core is written against.

The SQL adapter in ``app.repo`` implements both ``MatchStore`` and
``PairingPrimitive``; ``app.services.conversation_client`` implements
``ConversationService``. Tests substitute in-memory fakes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from .match_types import ConversationRef, MatchCriteria, MatchRequest, MatchSession, Profile


class PairingUnavailable(Exception):
    """The pairing store answered with an error. Callers keep polling."""


class ConversationError(Exception):
    """The chat service could not create or look up a conversation."""


class PairingPrimitive(Protocol):
    """
    Opaque, externally transactional pairing decision.

    ``start_match`` creates a waiting request for the profile and, in the same
    store transaction, may pair it. ``try_match`` pairs an existing waiting
    request. Either returns the session it created or found, or ``None`` when
    the request stays waiting. A cancelled request is never paired afterwards.
    Store failures surface as ``PairingUnavailable``.
    """

    def start_match(self, profile_id: str, criteria: MatchCriteria) -> MatchSession | None: ...

    def try_match(self, request_id: str) -> MatchSession | None: ...

    def cancel_match(self, request_id: str) -> None: ...

    def get_active_request(self, profile_id: str) -> MatchRequest | None: ...


class MatchStore(Protocol):
    def ensure_profile(self, external_identity: str) -> Profile: ...

    def get_profile(self, profile_id: str) -> Profile | None: ...

    def set_profile_completed(self, profile_id: str, is_completed: bool) -> None: ...

    def get_request(self, request_id: str) -> MatchRequest | None: ...

    def get_latest_request(self, profile_id: str) -> MatchRequest | None: ...

    def list_waiting_requests(self, profile_id: str) -> list[MatchRequest]: ...

    def mark_request_failed(self, request_id: str) -> bool: ...

    def touch_request(self, request_id: str, profile_id: str) -> MatchRequest | None: ...

    def get_session(self, session_id: str) -> MatchSession | None: ...

    def find_session_by_request(self, request_id: str) -> MatchSession | None: ...

    def find_open_session_for_profile(self, profile_id: str, since: datetime | None = None) -> MatchSession | None: ...

    def list_sessions_missing_conversation(self, limit: int) -> list[MatchSession]: ...

    def attach_conversation(self, session_id: str, conversation_id: str, force: bool) -> MatchSession | None:
        """
        Bind a conversation to a session and mark it matched.

        Unforced: only writes when the session has no conversation yet or
        already holds the same id. Forced: always writes. Returns the stored
        session afterwards, or ``None`` when the session does not exist.
        """
        ...

    def fetch_match_preferences(self, external_identity: str) -> dict[str, Any]: ...

    def upsert_match_preferences(self, external_identity: str, preferences: dict[str, Any]) -> None: ...


class ConversationService(Protocol):
    def create(
        self,
        members: tuple[str, ...],
        name: str,
        attributes: dict[str, Any],
        uniqueness_key: str,
    ) -> ConversationRef:
        """
        Create a conversation for ``members`` or return the existing one.

        Concurrent calls with the same member set and uniqueness key resolve
        to the same conversation id.
        """
        ...
