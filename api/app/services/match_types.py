from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Mapping

REQUEST_WAITING = "waiting"
REQUEST_MATCHED = "matched"
REQUEST_CANCELLED = "cancelled"
REQUEST_FAILED = "failed"
CLOSED_REQUEST_STATUSES = frozenset({REQUEST_CANCELLED, REQUEST_FAILED, "expired"})

SESSION_PENDING = "pending"
SESSION_MATCHED = "matched"
OPEN_SESSION_STATUSES = (SESSION_PENDING, SESSION_MATCHED)

SLOT_A = "A"
SLOT_B = "B"


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text or None


@dataclass(frozen=True)
class Profile:
    id: str
    external_identity: str | None
    is_completed: bool = False
    gender: str | None = None
    age: int | None = None
    first_language: str | None = None
    second_language: str | None = None
    home_city: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Profile":
        age = row.get("age")
        return cls(
            id=str(row["id"]),
            external_identity=_str_or_none(row.get("external_identity")),
            is_completed=bool(row.get("is_completed")),
            gender=row.get("gender"),
            age=int(age) if age is not None else None,
            first_language=row.get("first_language"),
            second_language=row.get("second_language"),
            home_city=row.get("home_city"),
        )


@dataclass(frozen=True)
class MatchCriteria:
    trip_card_id: str
    preferred_gender: str | None = None
    preferred_age_min: int | None = None
    preferred_age_max: int | None = None
    preferred_languages: tuple[str, ...] | None = None
    city_scope_mode: str = "Strict"

    def as_payload(self) -> dict[str, Any]:
        return {
            "tripCardId": self.trip_card_id,
            "preferredGender": self.preferred_gender,
            "preferredAgeMin": self.preferred_age_min,
            "preferredAgeMax": self.preferred_age_max,
            "preferredLanguages": list(self.preferred_languages) if self.preferred_languages else None,
            "cityScopeMode": self.city_scope_mode,
        }


@dataclass(frozen=True)
class MatchRequest:
    id: str
    profile_id: str
    status: str
    trip_card_id: str | None = None
    created_at: datetime | None = None

    @property
    def is_waiting(self) -> bool:
        return self.status == REQUEST_WAITING

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "MatchRequest":
        return cls(
            id=str(row["id"]),
            profile_id=str(row["profile_id"]),
            status=str(row.get("status") or REQUEST_WAITING),
            trip_card_id=_str_or_none(row.get("trip_card_id")),
            created_at=row.get("created_at"),
        )


@dataclass(frozen=True)
class MatchSession:
    id: str
    profile_a_id: str | None
    profile_b_id: str | None
    request_a_id: str | None = None
    request_b_id: str | None = None
    conversation_id: str | None = None
    status: str = SESSION_PENDING
    created_at: datetime | None = None

    def request_for_profile(self, profile_id: str) -> str | None:
        if profile_id == self.profile_a_id:
            return self.request_a_id
        if profile_id == self.profile_b_id:
            return self.request_b_id
        return None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "profileAId": self.profile_a_id,
            "profileBId": self.profile_b_id,
            "requestAId": self.request_a_id,
            "requestBId": self.request_b_id,
            "conversationId": self.conversation_id,
            "status": self.status,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "MatchSession":
        return cls(
            id=str(row.get("id") or row.get("session_id")),
            profile_a_id=_str_or_none(row.get("profile_a_id")),
            profile_b_id=_str_or_none(row.get("profile_b_id")),
            request_a_id=_str_or_none(row.get("request_a_id")),
            request_b_id=_str_or_none(row.get("request_b_id")),
            conversation_id=_str_or_none(row.get("conversation_id")),
            status=str(row.get("status") or SESSION_PENDING),
            created_at=row.get("created_at"),
        )


@dataclass(frozen=True)
class PartnerView:
    """Who the caller is inside a session and who sits in the other slot."""

    status: str
    session_id: str
    request_id: str | None = None
    self_profile_id: str | None = None
    self_slot: str | None = None
    other_profile_id: str | None = None
    other_external_identity: str | None = None
    conversation_id: str | None = None
    reason: str | None = None

    @property
    def is_matched(self) -> bool:
        return self.status == SESSION_MATCHED

    def with_conversation(self, conversation_id: str | None) -> "PartnerView":
        return replace(self, conversation_id=conversation_id)


# Outcomes. Waiting and Matched are steady states of the polling protocol,
# Rejected is a business answer, Fault is the only failure.


@dataclass(frozen=True)
class Matched:
    view: PartnerView
    reused_conversation: bool = False


@dataclass(frozen=True)
class Waiting:
    request_id: str | None
    session_id: str | None = None
    reason: str | None = None
    self_profile_id: str | None = None
    other_profile_id: str | None = None
    other_external_identity: str | None = None


@dataclass(frozen=True)
class Rejected:
    code: str
    message: str
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Fault:
    cause: BaseException
    message: str = "Unexpected match failure"


MatchOutcome = Matched | Waiting | Rejected | Fault


@dataclass(frozen=True)
class Submission:
    profile_id: str
    session: MatchSession | None
    request: MatchRequest | None
    cancelled_request_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class ConversationRef:
    conversation_id: str
    reused: bool = False


@dataclass(frozen=True)
class ProvisionResult:
    conversation_id: str
    reused: bool
    updated: bool
