from typing import Any

from fastapi import APIRouter, Depends

from ..auth.deps import Actor, require_traveler
from ..config import RL_MATCH_POLL_LIMIT, RL_MATCH_START_LIMIT, RL_WINDOW_SECONDS
from ..deps import get_match_service
from ..http_helpers import ok, outcome_response
from ..schemas import AttachConversationRequest, CancelMatchRequest, GetPartnerRequest, RequestIdBody, StartMatchRequest
from ..services.match_service import MatchService
from ..services.rate_limit import rate_limit_dependency

router = APIRouter(prefix="/functions/v1")

RL_MATCH_START = rate_limit_dependency("match_start", RL_MATCH_START_LIMIT, RL_WINDOW_SECONDS)
RL_MATCH_POLL = rate_limit_dependency("match_poll", RL_MATCH_POLL_LIMIT, RL_WINDOW_SECONDS)


@router.post("/match-start", dependencies=[RL_MATCH_START])
def match_start(
    body: StartMatchRequest,
    actor: Actor = Depends(require_traveler),
    service: MatchService = Depends(get_match_service),
) -> Any:
    criteria = service.criteria_for(
        actor.external_identity,
        body.trip_card_id,
        body.explicit_preferences(),
        body.preferences,
    )
    outcome = service.start(actor.external_identity, criteria)
    return outcome_response(outcome, extra={"appliedPreferences": criteria.as_payload()})


@router.post("/match-poll", dependencies=[RL_MATCH_POLL])
def match_poll(
    body: RequestIdBody,
    actor: Actor = Depends(require_traveler),
    service: MatchService = Depends(get_match_service),
) -> Any:
    return outcome_response(service.poll(actor.external_identity, body.request_id))


@router.post("/match-heartbeat", dependencies=[RL_MATCH_POLL])
def match_heartbeat(
    body: RequestIdBody,
    actor: Actor = Depends(require_traveler),
    service: MatchService = Depends(get_match_service),
) -> Any:
    return outcome_response(service.heartbeat(actor.external_identity, body.request_id))


@router.post("/match-cancel")
def match_cancel(
    body: CancelMatchRequest,
    actor: Actor = Depends(require_traveler),
    service: MatchService = Depends(get_match_service),
) -> dict[str, Any]:
    request_id = (body.request_id or "").strip() or None
    return ok(service.cancel(actor.external_identity, request_id))


@router.post("/match-get-partner")
def match_get_partner(
    body: GetPartnerRequest,
    actor: Actor = Depends(require_traveler),
    service: MatchService = Depends(get_match_service),
) -> dict[str, Any]:
    view = service.get_partner(actor.external_identity, body.session_id, body.self_profile_id)
    return ok(
        {
            "status": view.status,
            "sessionId": view.session_id,
            "requestId": view.request_id,
            "otherProfileId": view.other_profile_id,
            "otherExternalIdentity": view.other_external_identity,
            "conversationId": view.conversation_id,
        }
    )


@router.post("/match-attach-conversation")
def match_attach_conversation(
    body: AttachConversationRequest,
    actor: Actor = Depends(require_traveler),
    service: MatchService = Depends(get_match_service),
) -> dict[str, Any]:
    session = service.attach_conversation(actor.external_identity, body.session_id, body.conversation_id, body.force)
    return ok(session.as_dict())
