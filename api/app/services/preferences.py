from __future__ import annotations

import math
from typing import Any

from ..config import DEFAULT_CITY_SCOPE_MODE
from .match_types import MatchCriteria


def normalize_gender(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    v = value.strip()
    return v or None


def normalize_number(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(num):
        return None
    return int(num)


def normalize_languages(values: Any) -> tuple[str, ...] | None:
    if not isinstance(values, (list, tuple)):
        return None
    out: list[str] = []
    for value in values:
        if not isinstance(value, str):
            continue
        v = value.strip()
        if v and v not in out:
            out.append(v)
    return tuple(out) or None


def normalize_city_scope(value: Any) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return DEFAULT_CITY_SCOPE_MODE


def resolve_criteria(trip_card_id: str, explicit: dict[str, Any], stored: dict[str, Any] | None) -> MatchCriteria:
    """
    Merge preferences sent with the request over the stored ones.

    ``explicit`` holds only the fields the caller actually sent, so an explicit
    ``null`` clears a stored filter while an omitted field inherits it.
    """
    stored = stored or {}

    def pick(key: str) -> Any:
        return explicit[key] if key in explicit else stored.get(key)

    return MatchCriteria(
        trip_card_id=trip_card_id,
        preferred_gender=normalize_gender(pick("preferredGender")),
        preferred_age_min=normalize_number(pick("preferredAgeMin")),
        preferred_age_max=normalize_number(pick("preferredAgeMax")),
        preferred_languages=normalize_languages(pick("preferredLanguages")),
        city_scope_mode=normalize_city_scope(pick("cityScopeMode")),
    )
