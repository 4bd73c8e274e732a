from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException

from .contracts import ConversationError, MatchStore, PairingPrimitive, PairingUnavailable
from .conversation_provisioning import ConversationProvisioner, MissingIdentity
from .match_types import (
    CLOSED_REQUEST_STATUSES,
    Fault,
    MatchCriteria,
    Matched,
    MatchOutcome,
    MatchRequest,
    MatchSession,
    PartnerView,
    Profile,
    Rejected,
    Waiting,
)
from .partner_resolution import resolve_partner
from .preferences import resolve_criteria
from .request_lifecycle import RequestLifecycle
from .session_reconciliation import (
    POLL_STRATEGIES,
    SUBMIT_FALLBACK_STRATEGIES,
    ResolutionContext,
    SessionHit,
    SessionLookups,
    resolve_session,
)

logger = logging.getLogger(__name__)


class MatchService:
    """
    Entry point for every match operation.

    Holds no state between calls: each method re-reads the store and returns
    a typed outcome. Ownership and not-found problems raise ``HTTPException``.
    """

    def __init__(self, store: MatchStore, pairing: PairingPrimitive, provisioner: ConversationProvisioner) -> None:
        self.store = store
        self.pairing = pairing
        self.provisioner = provisioner
        self.lifecycle = RequestLifecycle(store, pairing)
        self.lookups = SessionLookups.from_store(store, pairing)

    # -- helpers ---------------------------------------------------------

    def profile_for(self, external_identity: str) -> Profile:
        return self.store.ensure_profile(external_identity)

    def _owned_request(self, request_id: str, profile: Profile) -> MatchRequest:
        request = self.store.get_request(request_id)
        if request is None:
            raise HTTPException(status_code=404, detail="Request not found")
        if request.profile_id != profile.id:
            raise HTTPException(status_code=403, detail="Request does not belong to user")
        return request

    def _session_or_404(self, session_id: str) -> MatchSession:
        session = self.store.get_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return session

    def _partner(self, session: MatchSession, profile: Profile, identity: str, request_id: str | None = None) -> PartnerView:
        return resolve_partner(session, profile.id, identity, self.store.get_profile, request_id=request_id)

    def _settle(self, identity: str, profile: Profile, hit: SessionHit, *, provision: bool = True) -> MatchOutcome:
        session = hit.session
        partner = self._partner(session, profile, identity, hit.request_id)
        logger.info(
            "[MATCH] session resolved session_id=%s strategy=%s partner_status=%s conversation=%s",
            session.id,
            hit.strategy,
            partner.status,
            bool(session.conversation_id),
        )
        if not partner.is_matched:
            return Waiting(
                request_id=partner.request_id,
                session_id=session.id,
                reason=partner.reason,
                self_profile_id=partner.self_profile_id or profile.id,
                other_profile_id=partner.other_profile_id,
            )

        if not provision:
            if session.conversation_id:
                return Matched(view=partner, reused_conversation=True)
            return Waiting(
                request_id=partner.request_id,
                session_id=session.id,
                reason="conversation_pending",
                self_profile_id=partner.self_profile_id,
                other_profile_id=partner.other_profile_id,
                other_external_identity=partner.other_external_identity,
            )

        try:
            result = self.provisioner.ensure(session, identity, partner.other_external_identity, partner.self_slot or "A")
        except MissingIdentity:
            return Waiting(
                request_id=partner.request_id,
                session_id=session.id,
                reason="peer_identity_pending",
                self_profile_id=partner.self_profile_id,
                other_profile_id=partner.other_profile_id,
            )
        except ConversationError as exc:
            logger.warning("[CONVERSATION] provisioning failed session_id=%s error=%s", session.id, exc)
            return Rejected(
                code="CONVERSATION_UNAVAILABLE",
                message="Conversation could not be created yet, retry shortly",
                detail={"sessionId": session.id, "requestId": partner.request_id},
            )
        return Matched(view=partner.with_conversation(result.conversation_id), reused_conversation=result.reused)

    # -- operations ------------------------------------------------------

    def criteria_for(
        self,
        identity: str,
        trip_card_id: str,
        explicit: dict[str, Any],
        submitted: dict[str, Any] | None = None,
    ) -> MatchCriteria:
        """A non-empty ``submitted`` preferences object replaces the stored one."""
        if submitted:
            self.store.upsert_match_preferences(identity, submitted)
            stored = submitted
        else:
            stored = self.store.fetch_match_preferences(identity)
        return resolve_criteria(trip_card_id, explicit, stored)

    def start(self, identity: str, criteria: MatchCriteria) -> MatchOutcome:
        profile = self.profile_for(identity)
        try:
            submission = self.lifecycle.submit(profile, criteria)
        except PairingUnavailable as exc:
            logger.warning("[MATCH] start_match store error profile_id=%s error=%s", profile.id, exc)
            return Rejected(code="MATCH_STORE_ERROR", message="Matching is temporarily unavailable", detail={"profileId": profile.id})
        if isinstance(submission, Rejected):
            return submission

        if submission.session is not None:
            request_id = submission.session.request_for_profile(profile.id) or (submission.request.id if submission.request else None)
            return self._settle(identity, profile, SessionHit(submission.session, request_id, "start_match"))

        ctx = ResolutionContext(profile_id=profile.id, request=submission.request)
        hit = resolve_session(ctx, self.lookups, SUBMIT_FALLBACK_STRATEGIES)
        if isinstance(hit, Waiting):
            return hit
        return self._settle(identity, profile, hit)

    def poll(self, identity: str, request_id: str) -> MatchOutcome:
        profile = self.profile_for(identity)
        request = self._owned_request(request_id, profile)
        try:
            return self._poll_owned(identity, profile, request)
        except Exception as exc:
            logger.exception("[MATCH] poll failed request_id=%s", request.id)
            # A request that broke mid-poll is never handed out again.
            try:
                self.store.mark_request_failed(request.id)
            except Exception:
                logger.exception("[MATCH] could not mark request failed request_id=%s", request.id)
            return Fault(cause=exc, message="Failed to poll match")

    def _poll_owned(self, identity: str, profile: Profile, request: MatchRequest) -> MatchOutcome:
        ctx = ResolutionContext(profile_id=profile.id, request=request)
        hit = resolve_session(ctx, self.lookups, POLL_STRATEGIES)
        if isinstance(hit, SessionHit):
            return self._settle(identity, profile, hit)

        if request.status in CLOSED_REQUEST_STATUSES:
            return Rejected(
                code="REQUEST_NOT_WAITING",
                message=f"Request is {request.status}",
                detail={"requestId": request.id, "requestStatus": request.status},
            )

        active = self.pairing.get_active_request(profile.id)
        if active is not None and active.id != request.id:
            return Rejected(
                code="REQUEST_SUPERSEDED",
                message="A newer match request replaced this one",
                detail={"requestId": request.id, "activeRequestId": active.id},
            )

        try:
            session = self.pairing.try_match(request.id)
        except PairingUnavailable as exc:
            logger.warning("[MATCH] try_match store error request_id=%s error=%s", request.id, exc)
            return Rejected(
                code="MATCH_STORE_ERROR",
                message="Matching is temporarily unavailable, keep polling",
                detail={"requestId": request.id},
            )
        if session is None:
            return Waiting(request_id=request.id, reason="no_session_yet", self_profile_id=profile.id)
        return self._settle(identity, profile, SessionHit(session, request.id, "try_match"))

    def heartbeat(self, identity: str, request_id: str) -> MatchOutcome:
        profile = self.profile_for(identity)
        request = self._owned_request(request_id, profile)
        ctx = ResolutionContext(profile_id=profile.id, request=request)
        hit = resolve_session(ctx, self.lookups, POLL_STRATEGIES)
        if isinstance(hit, SessionHit):
            return self._settle(identity, profile, hit, provision=False)

        touched = self.store.touch_request(request.id, profile.id)
        if touched is None:
            return Rejected(
                code="REQUEST_NOT_WAITING",
                message="Request is no longer waiting",
                detail={"requestId": request.id, "requestStatus": request.status},
            )
        return Waiting(request_id=request.id, reason="no_session_yet", self_profile_id=profile.id)

    def cancel(self, identity: str, request_id: str | None) -> dict[str, Any]:
        profile = self.profile_for(identity)
        if request_id:
            return self.lifecycle.cancel(self._owned_request(request_id, profile))
        active = self.pairing.get_active_request(profile.id)
        cancelled = self.lifecycle.cancel_all(profile)
        return {
            "status": "cancelled",
            "requestId": active.id if active else None,
            "cancelledRequestIds": cancelled,
        }

    def get_partner(self, identity: str, session_id: str, self_profile_id: str | None = None) -> PartnerView:
        profile = self.profile_for(identity)
        if self_profile_id and self_profile_id != profile.id:
            raise HTTPException(status_code=403, detail="selfProfileId does not belong to user")
        session = self._session_or_404(session_id)
        return self._partner(session, profile, identity)

    def attach_conversation(self, identity: str, session_id: str, conversation_id: str, force: bool) -> MatchSession:
        profile = self.profile_for(identity)
        session = self._session_or_404(session_id)
        if self._partner(session, profile, identity).self_slot is None:
            raise HTTPException(status_code=403, detail="Session does not belong to user")
        attached = self.store.attach_conversation(session.id, conversation_id, force=force)
        if attached is None:
            raise HTTPException(status_code=404, detail="Session not found")
        if attached.conversation_id != conversation_id:
            logger.info(
                "[MATCH] attach kept existing conversation session_id=%s existing=%s requested=%s",
                session.id,
                attached.conversation_id,
                conversation_id,
            )
        return attached

    def provision_pending(self, limit: int) -> dict[str, int]:
        """Create conversations for sessions that never got one."""
        summary = {"scanned": 0, "attached": 0, "skipped": 0, "errors": 0}
        for session in self.store.list_sessions_missing_conversation(limit):
            summary["scanned"] += 1
            a = self.store.get_profile(session.profile_a_id) if session.profile_a_id else None
            b = self.store.get_profile(session.profile_b_id) if session.profile_b_id else None
            if a is None or b is None or not a.external_identity or not b.external_identity:
                logger.warning(
                    "[SWEEP] missing identity session_id=%s profile_a=%s profile_b=%s",
                    session.id,
                    session.profile_a_id,
                    session.profile_b_id,
                )
                summary["skipped"] += 1
                continue
            try:
                result = self.provisioner.ensure(session, a.external_identity, b.external_identity, "A")
            except ConversationError as exc:
                logger.error("[SWEEP] provisioning failed session_id=%s error=%s", session.id, exc)
                summary["errors"] += 1
                continue
            logger.info("[SWEEP] attached session_id=%s conversation_id=%s", session.id, result.conversation_id)
            summary["attached"] += 1
        return summary
