"""
HTTP client for the chat service's conversation REST API.

Conversations are stored as ``_Conversation`` objects whose ``m`` field holds
the member identities; creation is sent with ``unique: true`` so the service
collapses concurrent creations for the same member set onto one object.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from ..config import (
    CONVERSATION_API_URL,
    CONVERSATION_APP_ID,
    CONVERSATION_APP_KEY,
    CONVERSATION_MASTER_KEY,
    CONVERSATION_TIMEOUT_SECONDS,
)
from .contracts import ConversationError
from .match_types import ConversationRef

logger = logging.getLogger(__name__)


class ConversationServiceClient:
    def __init__(
        self,
        base_url: str,
        app_id: str,
        app_key: str = "",
        master_key: str = "",
        *,
        timeout: float = CONVERSATION_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.app_id = app_id
        self.app_key = app_key
        self.master_key = master_key
        self._client = httpx.Client(base_url=self.base_url or "http://localhost", timeout=timeout, transport=transport)

    @classmethod
    def from_config(cls) -> "ConversationServiceClient":
        return cls(CONVERSATION_API_URL, CONVERSATION_APP_ID, CONVERSATION_APP_KEY, CONVERSATION_MASTER_KEY)

    def close(self) -> None:
        self._client.close()

    def _ensure_config(self) -> None:
        missing = []
        if not self.base_url:
            missing.append("CONVERSATION_API_URL")
        if not self.app_id:
            missing.append("CONVERSATION_APP_ID")
        if not self.app_key and not self.master_key:
            missing.append("CONVERSATION_APP_KEY/CONVERSATION_MASTER_KEY")
        if missing:
            raise ConversationError(f"conversation service config missing: {', '.join(missing)}")

    def _headers(self) -> dict[str, str]:
        key = f"{self.master_key},master" if self.master_key else self.app_key
        return {"Content-Type": "application/json", "X-LC-Id": self.app_id, "X-LC-Key": key}

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        self._ensure_config()
        try:
            resp = self._client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.HTTPError as exc:
            raise ConversationError(f"conversation service unreachable: {exc}") from exc
        if resp.is_error:
            raise ConversationError(f"conversation service request failed: {resp.status_code} {resp.text[:200]}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise ConversationError("conversation service returned invalid JSON") from exc
        return body if isinstance(body, dict) else {}

    def find_existing(self, members: tuple[str, ...]) -> str | None:
        body = self._request(
            "GET",
            "/1.1/classes/_Conversation",
            params={"where": json.dumps({"m": {"$all": list(members)}}), "limit": "10", "order": "-updatedAt"},
        )
        for row in body.get("results") or []:
            row_members = row.get("m") if isinstance(row.get("m"), list) else []
            if len(row_members) == len(members) and all(m in row_members for m in members):
                return row.get("objectId") or None
        return None

    def fetch_member_profiles(self, members: tuple[str, ...]) -> dict[str, dict[str, str]]:
        """Display names and avatars for members; empty when the lookup fails."""
        try:
            body = self._request(
                "GET",
                "/1.1/classes/_User",
                params={
                    "where": json.dumps({"objectId": {"$in": list(members)}}),
                    "keys": "objectId,nickname,username,avatar,avatarUrl",
                },
            )
        except ConversationError as exc:
            logger.warning("[CONVERSATION] member profile lookup failed members=%s error=%s", list(members), exc)
            return {}
        out: dict[str, dict[str, str]] = {}
        for user in body.get("results") or []:
            object_id = user.get("objectId")
            if not object_id:
                continue
            out[object_id] = {
                "name": user.get("nickname") or user.get("username") or "Traveler",
                "avatarUrl": user.get("avatar") or user.get("avatarUrl") or "",
            }
        return out

    def create(
        self,
        members: tuple[str, ...],
        name: str,
        attributes: dict[str, Any],
        uniqueness_key: str,
    ) -> ConversationRef:
        existing = self.find_existing(members)
        if existing:
            logger.info("[CONVERSATION] reused conversation_id=%s key=%s", existing, uniqueness_key)
            return ConversationRef(conversation_id=existing, reused=True)

        profiles = self.fetch_member_profiles(members)
        participant_meta = dict(attributes.get("participantMeta") or {})
        for member in members:
            user = profiles.get(member, {})
            participant_meta[member] = {
                **participant_meta.get(member, {}),
                "name": user.get("name", "Traveler"),
                "avatarUrl": user.get("avatarUrl", ""),
            }

        body = self._request(
            "POST",
            "/1.1/classes/_Conversation",
            json={
                "m": list(members),
                "name": name,
                "attr": {**attributes, "uniqueKey": uniqueness_key, "participantMeta": participant_meta},
                "tr": False,
                "sys": False,
                "unique": True,
            },
        )
        conversation_id = body.get("objectId")
        if not conversation_id:
            raise ConversationError("conversation create response missing objectId")
        logger.info("[CONVERSATION] created conversation_id=%s key=%s", conversation_id, uniqueness_key)
        return ConversationRef(conversation_id=str(conversation_id), reused=False)
