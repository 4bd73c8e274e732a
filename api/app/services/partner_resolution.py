from __future__ import annotations

import logging
from typing import Callable

from .match_types import SESSION_MATCHED, SLOT_A, SLOT_B, MatchSession, PartnerView, Profile

logger = logging.getLogger(__name__)

ProfileLookup = Callable[[str], Profile | None]


def _slot_by_identity(
    session: MatchSession,
    external_identity: str | None,
    get_profile: ProfileLookup,
) -> tuple[str, str] | None:
    """Find the slot whose profile is linked to the caller's external identity."""
    if not external_identity:
        return None
    for slot, profile_id in ((SLOT_A, session.profile_a_id), (SLOT_B, session.profile_b_id)):
        if not profile_id:
            continue
        profile = get_profile(profile_id)
        if profile is not None and profile.external_identity == external_identity:
            return slot, profile_id
    return None


def resolve_partner(
    session: MatchSession,
    self_profile_id: str,
    self_external_identity: str | None,
    get_profile: ProfileLookup,
    request_id: str | None = None,
) -> PartnerView:
    def waiting(reason: str, **kwargs) -> PartnerView:
        return PartnerView(
            status="waiting",
            session_id=session.id,
            request_id=request_id,
            conversation_id=session.conversation_id,
            reason=reason,
            **kwargs,
        )

    if self_profile_id and self_profile_id == session.profile_a_id:
        slot, own_profile_id = SLOT_A, session.profile_a_id
    elif self_profile_id and self_profile_id == session.profile_b_id:
        slot, own_profile_id = SLOT_B, session.profile_b_id
    else:
        # Profile ids can disagree while the identity link is being rebuilt;
        # the authenticated identity is authoritative.
        found = _slot_by_identity(session, self_external_identity, get_profile)
        if found is None:
            logger.warning(
                "[MATCH] caller not in session session_id=%s self_profile_id=%s",
                session.id,
                self_profile_id,
            )
            return waiting("self_not_in_session", self_profile_id=self_profile_id)
        slot, own_profile_id = found
        logger.info(
            "[MATCH] slot adopted by identity session_id=%s slot=%s profile_id=%s caller_profile_id=%s",
            session.id,
            slot,
            own_profile_id,
            self_profile_id,
        )

    other_profile_id = session.profile_b_id if slot == SLOT_A else session.profile_a_id
    request_id = request_id or (session.request_a_id if slot == SLOT_A else session.request_b_id)
    known = {"self_profile_id": own_profile_id, "self_slot": slot}

    if not other_profile_id:
        return waiting("session_profiles_missing", **known)
    if other_profile_id == own_profile_id:
        return waiting("self_peer_same_profile", **known)

    other = get_profile(other_profile_id)
    if other is None:
        return waiting("peer_profile_not_found", other_profile_id=other_profile_id, **known)
    if not other.external_identity:
        return waiting("peer_identity_pending", other_profile_id=other_profile_id, **known)

    return PartnerView(
        status=SESSION_MATCHED,
        session_id=session.id,
        request_id=request_id,
        self_profile_id=own_profile_id,
        self_slot=slot,
        other_profile_id=other_profile_id,
        other_external_identity=other.external_identity,
        conversation_id=session.conversation_id,
    )
