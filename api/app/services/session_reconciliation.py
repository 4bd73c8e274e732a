"""
Finding the session a match request belongs to.

Recovery is an ordered tuple of strategies tried left to right; the first one
that returns a hit wins. ``resolve_session`` does no I/O of its own: all reads
go through the injected ``SessionLookups`` so the chain can be exercised with
plain stubs.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .contracts import MatchStore, PairingPrimitive
from .match_types import MatchRequest, MatchSession, Waiting


@dataclass(frozen=True)
class SessionLookups:
    session_for_request: Callable[[str], MatchSession | None]
    active_request: Callable[[str], MatchRequest | None]
    open_session_for_profile: Callable[[str, datetime | None], MatchSession | None]

    @classmethod
    def from_store(cls, store: MatchStore, pairing: PairingPrimitive) -> "SessionLookups":
        return cls(
            session_for_request=store.find_session_by_request,
            active_request=pairing.get_active_request,
            open_session_for_profile=store.find_open_session_for_profile,
        )


@dataclass
class ResolutionContext:
    profile_id: str
    request: MatchRequest | None
    active_request: MatchRequest | None = None

    @property
    def request_id(self) -> str | None:
        if self.active_request is not None:
            return self.active_request.id
        return self.request.id if self.request is not None else None


@dataclass(frozen=True)
class SessionHit:
    session: MatchSession
    request_id: str | None
    strategy: str


Strategy = Callable[[ResolutionContext, SessionLookups], SessionHit | None]


def session_by_request(ctx: ResolutionContext, lookups: SessionLookups) -> SessionHit | None:
    if ctx.request is None:
        return None
    session = lookups.session_for_request(ctx.request.id)
    if session is None:
        return None
    return SessionHit(session=session, request_id=ctx.request.id, strategy="by_request")


def session_by_active_request(ctx: ResolutionContext, lookups: SessionLookups) -> SessionHit | None:
    # The active request can differ from the one just submitted when a
    # concurrent start from the same profile replaced it.
    ctx.active_request = lookups.active_request(ctx.profile_id)
    if ctx.active_request is None:
        return None
    session = lookups.session_for_request(ctx.active_request.id)
    if session is None:
        return None
    return SessionHit(session=session, request_id=ctx.active_request.id, strategy="by_active_request")


def session_by_profile_membership(ctx: ResolutionContext, lookups: SessionLookups) -> SessionHit | None:
    since = ctx.request.created_at if ctx.request is not None else None
    session = lookups.open_session_for_profile(ctx.profile_id, since)
    if session is None:
        return None
    request_id = session.request_for_profile(ctx.profile_id) or ctx.request_id
    return SessionHit(session=session, request_id=request_id, strategy="by_profile_membership")


POLL_STRATEGIES: tuple[Strategy, ...] = (session_by_request,)
SUBMIT_FALLBACK_STRATEGIES: tuple[Strategy, ...] = (session_by_active_request, session_by_profile_membership)


def resolve_session(
    ctx: ResolutionContext,
    lookups: SessionLookups,
    strategies: tuple[Strategy, ...],
) -> SessionHit | Waiting:
    for strategy in strategies:
        hit = strategy(ctx, lookups)
        if hit is not None:
            return hit
    return Waiting(request_id=ctx.request_id, reason="no_session_yet", self_profile_id=ctx.profile_id)
