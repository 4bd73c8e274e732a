import hashlib
import threading
import time
from collections import deque
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request

PRUNE_EVERY = 512


@dataclass
class RateDecision:
    allowed: bool
    retry_after_seconds: int


class InMemoryRateLimiter:
    """Sliding window per key. Process-local, so limits apply per worker."""

    def __init__(self, prune_every: int = PRUNE_EVERY) -> None:
        self._events: dict[str, deque[float]] = {}
        self._windows: dict[str, int] = {}
        self._lock = threading.Lock()
        self._prune_every = prune_every
        self._checks = 0

    def check(self, key: str, limit: int, window_seconds: int) -> RateDecision:
        now = time.time()
        cutoff = now - window_seconds
        with self._lock:
            self._checks += 1
            if self._checks % self._prune_every == 0:
                self._prune_locked(now)
            dq = self._events.setdefault(key, deque())
            self._windows[key] = window_seconds
            while dq and dq[0] <= cutoff:
                dq.popleft()
            if len(dq) >= limit:
                retry_after = max(1, int(dq[0] + window_seconds - now))
                return RateDecision(allowed=False, retry_after_seconds=retry_after)
            dq.append(now)
            return RateDecision(allowed=True, retry_after_seconds=0)

    def prune(self) -> None:
        with self._lock:
            self._prune_locked(time.time())

    def _prune_locked(self, now: float) -> None:
        # Drop keys whose newest event has left their window.
        stale = [k for k, dq in self._events.items() if not dq or dq[-1] <= now - self._windows.get(k, 0)]
        for key in stale:
            self._events.pop(key, None)
            self._windows.pop(key, None)

    def __len__(self) -> int:
        return len(self._events)

    def reset(self) -> None:
        with self._lock:
            self._events.clear()
            self._windows.clear()
            self._checks = 0


limiter = InMemoryRateLimiter()


def _client_identifier(request: Request) -> str:
    # Whole-token digest: JWTs share their header prefix across callers.
    auth = request.headers.get("authorization", "").strip()
    if auth.lower().startswith("bearer ") and auth[7:].strip():
        digest = hashlib.sha256(auth[7:].strip().encode("utf-8")).hexdigest()[:16]
        return f"token:{digest}"
    xff = request.headers.get("x-forwarded-for", "").strip()
    if xff:
        return xff.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def rate_limit_dependency(route_key: str, limit: int, window_seconds: int):
    def _dep(request: Request) -> None:
        key = f"{route_key}:{_client_identifier(request)}"
        decision = limiter.check(key, limit=limit, window_seconds=window_seconds)
        if not decision.allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Too many requests. Retry in {decision.retry_after_seconds}s",
                headers={"Retry-After": str(decision.retry_after_seconds)},
            )

    return Depends(_dep)
