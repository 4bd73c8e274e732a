from __future__ import annotations

import hashlib
import logging
from typing import Any, Iterable

from ..config import CONVERSATION_NAME
from .contracts import ConversationError, ConversationService, MatchStore
from .match_types import SLOT_A, SLOT_B, MatchSession, ProvisionResult

logger = logging.getLogger(__name__)

CONVERSATION_TYPE = "matchChat"


class MissingIdentity(Exception):
    """One side of the session has no linked external identity yet."""


def canonical_members(identities: Iterable[str | None]) -> tuple[str, ...]:
    members = {str(i).strip() for i in identities if i is not None and str(i).strip()}
    return tuple(sorted(members))


def conversation_uniqueness_key(members: tuple[str, ...]) -> str:
    digest = hashlib.sha256("|".join(members).encode("utf-8")).hexdigest()
    return f"match:{digest[:32]}"


def build_conversation_attributes(
    session: MatchSession,
    slots: dict[str, str],
    uniqueness_key: str,
) -> dict[str, Any]:
    return {
        "type": CONVERSATION_TYPE,
        "category": CONVERSATION_TYPE,
        "matchSessionId": session.id,
        "uniqueKey": uniqueness_key,
        "participantMeta": {identity: {"role": "traveler", "slot": slot} for identity, slot in slots.items()},
    }


class ConversationProvisioner:
    def __init__(self, conversations: ConversationService, store: MatchStore) -> None:
        self.conversations = conversations
        self.store = store

    def ensure(
        self,
        session: MatchSession,
        self_identity: str | None,
        other_identity: str | None,
        self_slot: str = SLOT_A,
    ) -> ProvisionResult:
        if session.conversation_id:
            return ProvisionResult(conversation_id=session.conversation_id, reused=True, updated=False)
        if not self_identity or not other_identity:
            raise MissingIdentity(f"session {session.id} is missing a member identity")

        members = canonical_members([self_identity, other_identity])
        if len(members) != 2:
            raise ConversationError("conversation requires exactly 2 distinct members")

        other_slot = SLOT_B if self_slot == SLOT_A else SLOT_A
        key = conversation_uniqueness_key(members)
        ref = self.conversations.create(
            members,
            CONVERSATION_NAME,
            build_conversation_attributes(session, {self_identity.strip(): self_slot, other_identity.strip(): other_slot}, key),
            key,
        )

        attached = self.store.attach_conversation(session.id, ref.conversation_id, force=True)
        conversation_id = (attached.conversation_id if attached else None) or ref.conversation_id
        logger.info(
            "[CONVERSATION] attached session_id=%s conversation_id=%s reused=%s",
            session.id,
            conversation_id,
            ref.reused,
        )
        return ProvisionResult(conversation_id=conversation_id, reused=ref.reused, updated=True)
