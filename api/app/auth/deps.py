"""
Authentication dependencies for FastAPI.

Every match endpoint expects ``Authorization: Bearer <token>`` issued by the
identity service. The token's subject is the caller's external identity and
its ``role`` claim is ``traveler`` or ``host`` (``traveler`` when absent).
"""

import logging
import uuid
from typing import Any, Literal

from fastapi import Depends, Header, HTTPException
from pydantic import BaseModel

from app.auth.security import ROLES, decode_access_token

logger = logging.getLogger(__name__)


class Actor(BaseModel):
    external_identity: str
    role: Literal["traveler", "host"] = "traveler"


class AuthError(Exception):
    """Raised when the Authorization header cannot be used."""

    def __init__(self, reason: str, detail: str = "unauthorized"):
        self.reason = reason
        self.detail = detail
        self.trace_id = str(uuid.uuid4())
        super().__init__(detail)


def _log_auth_failure(reason: str, trace_id: str, token_prefix: str | None = None, payload: dict[str, Any] | None = None) -> None:
    log_data = {
        "trace_id": trace_id,
        "reason": reason,
        "token_prefix": token_prefix,
        "token_subject": payload.get("sub") if payload else None,
        "token_role": payload.get("role") if payload else None,
    }
    logger.warning(f"[AUTH_FAILURE] {log_data}")


def _extract_bearer(authorization: str | None) -> str:
    if not authorization:
        raise AuthError(reason="missing_token", detail="Missing bearer token")
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise AuthError(reason="malformed_token", detail="Invalid bearer token")
    return parts[1].strip()


def get_current_actor(authorization: str | None = Header(default=None, alias="Authorization")) -> Actor:
    try:
        token = _extract_bearer(authorization)
    except AuthError as e:
        _log_auth_failure(e.reason, e.trace_id)
        raise HTTPException(status_code=401, detail=e.detail)

    token_prefix = token[:8] + "..." if len(token) > 8 else token
    trace_id = str(uuid.uuid4())
    try:
        payload = decode_access_token(token)
    except HTTPException as e:
        reason = "token_expired" if "expired" in str(e.detail).lower() else "signature_invalid"
        _log_auth_failure(reason, trace_id, token_prefix)
        raise

    subject = str(payload.get("sub") or "").strip()
    if not subject:
        _log_auth_failure("token_missing_subject", trace_id, token_prefix, payload)
        raise HTTPException(status_code=401, detail="Invalid bearer token")

    role = str(payload.get("role") or "traveler").lower()
    if role not in ROLES:
        _log_auth_failure("unknown_role", trace_id, token_prefix, payload)
        raise HTTPException(status_code=403, detail="Unknown role")

    logger.debug(f"[auth] token valid, sub={subject} role={role}")
    return Actor(external_identity=subject, role=role)


def require_traveler(actor: Actor = Depends(get_current_actor)) -> Actor:
    if actor.role != "traveler":
        raise HTTPException(status_code=403, detail="Traveler role required")
    return actor
