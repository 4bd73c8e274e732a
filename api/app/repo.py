import json
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from app.database import SessionLocal
from app.services.contracts import PairingUnavailable
from app.services.match_types import (
    OPEN_SESSION_STATUSES,
    REQUEST_WAITING,
    MatchCriteria,
    MatchRequest,
    MatchSession,
    Profile,
)

PROFILE_COLUMNS = "id, external_identity, is_completed, gender, age, first_language, second_language, home_city"


class SqlMatchStore:
    """
    Postgres adapter for match state.

    Pairing decisions are delegated to the ``start_match``/``try_match``/
    ``cancel_match`` stored procedures owned by the database; everything else
    is plain reads and single-statement writes.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self.session_factory = session_factory

    def _one(self, sql: str, params: dict[str, Any], *, commit: bool = False) -> dict[str, Any] | None:
        with self.session_factory() as db:
            row = db.execute(text(sql), params).mappings().first()
            if commit:
                db.commit()
        return dict(row) if row else None

    def _all(self, sql: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        with self.session_factory() as db:
            rows = db.execute(text(sql), params).mappings().all()
        return [dict(r) for r in rows]

    def _pairing_call(self, sql: str, params: dict[str, Any]) -> MatchSession | None:
        try:
            row = self._one(sql, params, commit=True)
        except DBAPIError as exc:
            raise PairingUnavailable(str(exc.orig or exc)) from exc
        if not row or not (row.get("id") or row.get("session_id")):
            return None
        return MatchSession.from_row(row)

    # -- profiles --------------------------------------------------------

    def ensure_profile(self, external_identity: str) -> Profile:
        # DO UPDATE so RETURNING yields the row even when a concurrent insert won.
        row = self._one(
            f"""
            INSERT INTO profiles (external_identity)
            VALUES (:identity)
            ON CONFLICT (external_identity) DO UPDATE
              SET external_identity = EXCLUDED.external_identity
            RETURNING {PROFILE_COLUMNS}
            """,
            {"identity": external_identity},
            commit=True,
        )
        if row is None:
            raise RuntimeError(f"profile for {external_identity} could not be ensured")
        return Profile.from_row(row)

    def get_profile(self, profile_id: str) -> Profile | None:
        row = self._one(f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE id = CAST(:id AS uuid)", {"id": profile_id})
        return Profile.from_row(row) if row else None

    def set_profile_completed(self, profile_id: str, is_completed: bool) -> None:
        with self.session_factory() as db:
            db.execute(
                text("UPDATE profiles SET is_completed = :done WHERE id = CAST(:id AS uuid)"),
                {"done": is_completed, "id": profile_id},
            )
            db.commit()

    # -- requests --------------------------------------------------------

    def get_request(self, request_id: str) -> MatchRequest | None:
        row = self._one("SELECT * FROM match_requests WHERE id = CAST(:id AS uuid)", {"id": request_id})
        return MatchRequest.from_row(row) if row else None

    def get_latest_request(self, profile_id: str) -> MatchRequest | None:
        row = self._one(
            """
            SELECT * FROM match_requests
            WHERE profile_id = CAST(:profile_id AS uuid)
            ORDER BY created_at DESC
            LIMIT 1
            """,
            {"profile_id": profile_id},
        )
        return MatchRequest.from_row(row) if row else None

    def list_waiting_requests(self, profile_id: str) -> list[MatchRequest]:
        rows = self._all(
            """
            SELECT * FROM match_requests
            WHERE profile_id = CAST(:profile_id AS uuid) AND status = :status
            ORDER BY created_at DESC
            """,
            {"profile_id": profile_id, "status": REQUEST_WAITING},
        )
        return [MatchRequest.from_row(r) for r in rows]

    def mark_request_failed(self, request_id: str) -> bool:
        row = self._one(
            """
            UPDATE match_requests SET status = 'failed'
            WHERE id = CAST(:id AS uuid) AND status = 'waiting'
            RETURNING id
            """,
            {"id": request_id},
            commit=True,
        )
        return row is not None

    def touch_request(self, request_id: str, profile_id: str) -> MatchRequest | None:
        row = self._one(
            """
            UPDATE match_requests SET last_seen_at = now()
            WHERE id = CAST(:id AS uuid)
              AND profile_id = CAST(:profile_id AS uuid)
              AND status = 'waiting'
              AND (expires_at IS NULL OR expires_at >= now())
            RETURNING *
            """,
            {"id": request_id, "profile_id": profile_id},
            commit=True,
        )
        return MatchRequest.from_row(row) if row else None

    # -- pairing primitive -----------------------------------------------

    def start_match(self, profile_id: str, criteria: MatchCriteria) -> MatchSession | None:
        return self._pairing_call(
            """
            SELECT * FROM start_match(
              CAST(:profile_id AS uuid), :trip_card_id, :gender, :age_min, :age_max,
              CAST(:languages AS text[]), :city_scope
            )
            """,
            {
                "profile_id": profile_id,
                "trip_card_id": criteria.trip_card_id,
                "gender": criteria.preferred_gender,
                "age_min": criteria.preferred_age_min,
                "age_max": criteria.preferred_age_max,
                "languages": list(criteria.preferred_languages) if criteria.preferred_languages else None,
                "city_scope": criteria.city_scope_mode,
            },
        )

    def try_match(self, request_id: str) -> MatchSession | None:
        return self._pairing_call("SELECT * FROM try_match(CAST(:id AS uuid))", {"id": request_id})

    def cancel_match(self, request_id: str) -> None:
        try:
            with self.session_factory() as db:
                db.execute(text("SELECT cancel_match(CAST(:id AS uuid))"), {"id": request_id})
                db.commit()
        except DBAPIError as exc:
            raise PairingUnavailable(str(exc.orig or exc)) from exc

    def get_active_request(self, profile_id: str) -> MatchRequest | None:
        row = self._one(
            """
            SELECT * FROM match_requests
            WHERE profile_id = CAST(:profile_id AS uuid) AND status = :status
            ORDER BY created_at DESC
            LIMIT 1
            """,
            {"profile_id": profile_id, "status": REQUEST_WAITING},
        )
        return MatchRequest.from_row(row) if row else None

    # -- sessions --------------------------------------------------------

    def get_session(self, session_id: str) -> MatchSession | None:
        row = self._one("SELECT * FROM match_sessions WHERE id = CAST(:id AS uuid)", {"id": session_id})
        return MatchSession.from_row(row) if row else None

    def find_session_by_request(self, request_id: str) -> MatchSession | None:
        row = self._one(
            """
            SELECT * FROM match_sessions
            WHERE (request_a_id = CAST(:id AS uuid) OR request_b_id = CAST(:id AS uuid))
              AND status = ANY(:statuses)
            ORDER BY created_at DESC
            LIMIT 1
            """,
            {"id": request_id, "statuses": list(OPEN_SESSION_STATUSES)},
        )
        return MatchSession.from_row(row) if row else None

    def find_open_session_for_profile(self, profile_id: str, since: datetime | None = None) -> MatchSession | None:
        row = self._one(
            """
            SELECT * FROM match_sessions
            WHERE (profile_a_id = CAST(:profile_id AS uuid) OR profile_b_id = CAST(:profile_id AS uuid))
              AND status = ANY(:statuses)
              AND (CAST(:since AS timestamptz) IS NULL OR created_at >= CAST(:since AS timestamptz))
            ORDER BY created_at DESC
            LIMIT 1
            """,
            {"profile_id": profile_id, "statuses": list(OPEN_SESSION_STATUSES), "since": since},
        )
        return MatchSession.from_row(row) if row else None

    def list_sessions_missing_conversation(self, limit: int) -> list[MatchSession]:
        rows = self._all(
            """
            SELECT * FROM match_sessions
            WHERE conversation_id IS NULL AND status = ANY(:statuses)
            ORDER BY created_at DESC
            LIMIT :limit
            """,
            {"statuses": list(OPEN_SESSION_STATUSES), "limit": max(1, int(limit))},
        )
        return [MatchSession.from_row(r) for r in rows]

    def attach_conversation(self, session_id: str, conversation_id: str, force: bool) -> MatchSession | None:
        with self.session_factory() as db:
            row = db.execute(
                text(
                    """
                    UPDATE match_sessions
                    SET conversation_id = :conversation_id, status = 'matched'
                    WHERE id = CAST(:id AS uuid)
                      AND (:force OR conversation_id IS NULL OR conversation_id = :conversation_id)
                    RETURNING *
                    """
                ),
                {"id": session_id, "conversation_id": conversation_id, "force": bool(force)},
            ).mappings().first()
            db.commit()
        if row:
            return MatchSession.from_row(row)
        # Not written: unforced attach lost to an existing id, or no such session.
        return self.get_session(session_id)

    # -- preferences -----------------------------------------------------

    def fetch_match_preferences(self, external_identity: str) -> dict[str, Any]:
        row = self._one(
            "SELECT match_preferences FROM user_preferences WHERE external_identity = :identity",
            {"identity": external_identity},
        )
        prefs = (row or {}).get("match_preferences")
        if isinstance(prefs, str):
            prefs = json.loads(prefs)
        return prefs if isinstance(prefs, dict) else {}

    def upsert_match_preferences(self, external_identity: str, preferences: dict[str, Any]) -> None:
        with self.session_factory() as db:
            db.execute(
                text(
                    """
                    INSERT INTO user_preferences (external_identity, match_preferences)
                    VALUES (:identity, CAST(:prefs AS jsonb))
                    ON CONFLICT (external_identity) DO UPDATE
                      SET match_preferences = EXCLUDED.match_preferences,
                          updated_at = now()
                    """
                ),
                {"identity": external_identity, "prefs": json.dumps(preferences)},
            )
            db.commit()
