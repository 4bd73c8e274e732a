from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from fastapi import HTTPException

from app.config import ACCESS_TOKEN_TTL_MINUTES, DEV_BEARER_TOKEN, DEV_MODE, JWT_SECRET

ALGORITHM = "HS256"
ROLES = {"traveler", "host"}


def create_access_token(external_identity: str, role: str = "traveler", ttl_minutes: int | None = None) -> str:
    if not JWT_SECRET:
        raise HTTPException(status_code=500, detail="JWT secret not configured")
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=ttl_minutes or ACCESS_TOKEN_TTL_MINUTES)
    payload: dict[str, Any] = {
        "sub": external_identity,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=ALGORITHM)


def is_dev_token(token: str) -> bool:
    return DEV_MODE and bool(DEV_BEARER_TOKEN) and token == DEV_BEARER_TOKEN


def decode_access_token(token: str) -> dict[str, Any]:
    if is_dev_token(token):
        return {"sub": "dev", "role": "traveler"}
    if not JWT_SECRET:
        raise HTTPException(status_code=500, detail="JWT secret not configured")
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM])
        if not isinstance(payload, dict):
            raise HTTPException(status_code=401, detail="Invalid token")
        return payload
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=401, detail="Token expired") from exc
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc
