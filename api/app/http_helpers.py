from datetime import datetime, timezone
from typing import Any

from fastapi.responses import JSONResponse

from .services.match_types import Fault, Matched, MatchOutcome, Rejected, Waiting


def server_time() -> str:
    return datetime.now(timezone.utc).isoformat()


def ok(data: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"success": True, "data": data or {}}


def business_error(code: str, message: str, detail: Any = None) -> JSONResponse:
    # Business outcomes ride on HTTP 200 so polling clients keep going.
    return JSONResponse(status_code=200, content={"success": False, "code": code, "message": message, "detail": detail})


def transport_error(status_code: int, error: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


def matched_payload(outcome: Matched) -> dict[str, Any]:
    view = outcome.view
    return {
        "status": "matched",
        "sessionId": view.session_id,
        "requestId": view.request_id,
        "selfProfileId": view.self_profile_id,
        "selfSlot": view.self_slot,
        "otherProfileId": view.other_profile_id,
        "otherExternalIdentity": view.other_external_identity,
        "conversationId": view.conversation_id,
        "reusedConversation": outcome.reused_conversation,
        "serverTime": server_time(),
    }


def waiting_payload(outcome: Waiting) -> dict[str, Any]:
    return {
        "status": "waiting",
        "sessionId": outcome.session_id,
        "requestId": outcome.request_id,
        "selfProfileId": outcome.self_profile_id,
        "otherProfileId": outcome.other_profile_id,
        "otherExternalIdentity": outcome.other_external_identity,
        "conversationId": None,
        "reusedConversation": False,
        "reason": outcome.reason,
        "serverTime": server_time(),
    }


def outcome_response(outcome: MatchOutcome, extra: dict[str, Any] | None = None) -> dict[str, Any] | JSONResponse:
    if isinstance(outcome, Matched):
        return ok({**matched_payload(outcome), **(extra or {})})
    if isinstance(outcome, Waiting):
        return ok({**waiting_payload(outcome), **(extra or {})})
    if isinstance(outcome, Rejected):
        return business_error(outcome.code, outcome.message, outcome.detail)
    if isinstance(outcome, Fault):
        return transport_error(500, outcome.message)
    raise TypeError(f"unknown match outcome: {outcome!r}")
