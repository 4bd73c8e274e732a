from __future__ import annotations

import logging
import math
from typing import Any

from ..config import PROFILE_MAX_AGE, PROFILE_MIN_AGE
from .contracts import MatchStore, PairingPrimitive
from .match_types import REQUEST_MATCHED, MatchCriteria, MatchRequest, Profile, Rejected, Submission

logger = logging.getLogger(__name__)


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def compute_profile_completion(profile: Profile) -> tuple[bool, list[str]]:
    missing: list[str] = []
    if not _text(profile.gender):
        missing.append("gender")
    age = profile.age
    if age is None or not math.isfinite(float(age)) or age < PROFILE_MIN_AGE or age > PROFILE_MAX_AGE:
        missing.append("age")
    if not _text(profile.first_language):
        missing.append("firstLanguage")
    if not _text(profile.second_language):
        missing.append("secondLanguage")
    if not _text(profile.home_city):
        missing.append("homeCity")
    return not missing, missing


class RequestLifecycle:
    def __init__(self, store: MatchStore, pairing: PairingPrimitive) -> None:
        self.store = store
        self.pairing = pairing

    def submit(self, profile: Profile, criteria: MatchCriteria) -> Submission | Rejected:
        is_completed, missing = compute_profile_completion(profile)
        if profile.is_completed != is_completed:
            self.store.set_profile_completed(profile.id, is_completed)
        if not is_completed:
            return Rejected(
                code="INCOMPLETE_PROFILE",
                message="Profile onboarding is not complete",
                detail={"profileId": profile.id, "missingFields": missing},
            )

        # A stale waiting request could otherwise be paired behind the
        # caller's back after they started a fresh search.
        cancelled = self.cancel_all(profile)

        session = self.pairing.start_match(profile.id, criteria)
        latest = self.store.get_latest_request(profile.id)
        logger.info(
            "[MATCH] submit profile_id=%s request_id=%s session_id=%s cancelled=%s",
            profile.id,
            latest.id if latest else None,
            session.id if session else None,
            len(cancelled),
        )
        return Submission(profile_id=profile.id, session=session, request=latest, cancelled_request_ids=tuple(cancelled))

    def cancel_all(self, profile: Profile) -> list[str]:
        cancelled: list[str] = []
        for request in self.store.list_waiting_requests(profile.id):
            self.pairing.cancel_match(request.id)
            cancelled.append(request.id)
        return cancelled

    def cancel(self, request: MatchRequest) -> dict[str, Any]:
        """Cancel one request already verified to belong to the caller."""
        session = self.store.find_session_by_request(request.id)
        if session is not None or request.status == REQUEST_MATCHED:
            # Already paired: the session stays intact.
            logger.info(
                "[MATCH] cancel ignored for matched request request_id=%s session_id=%s",
                request.id,
                session.id if session else None,
            )
            return {"status": REQUEST_MATCHED, "requestId": request.id, "sessionId": session.id if session else None}

        if not request.is_waiting:
            return {"status": request.status, "requestId": request.id}
        self.pairing.cancel_match(request.id)
        return {"status": "cancelled", "requestId": request.id}
