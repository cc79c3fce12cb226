from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from tutor_rag_core.config import RateLimitRule, RateLimitTable, default_rate_limits
from tutor_rag_core.errors import BackendUnavailable
from tutor_rag_core.interfaces import CounterBackend

logger = logging.getLogger(__name__)

ROLE_ORDER = ("student", "teacher", "institution", "admin")

_ROLE_ALIASES = {
    "basic": "student",
    "anonymous": "student",
    "elevated": "teacher",
    "school": "institution",
    "institute": "institution",
    "institutional": "institution",
    "administrative": "admin",
}

DEFAULT_ENDPOINT = "general"


def normalize_role(role: str | None) -> str:
    r = (role or "").strip().lower()
    r = _ROLE_ALIASES.get(r, r)
    return r if r in ROLE_ORDER else "student"


def window_start(now: float, window_s: int) -> int:
    return int(now // window_s) * window_s


def counter_key(*, endpoint: str, actor_id: str, start: int) -> str:
    return f"rl:{endpoint}:{actor_id}:{start}"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # epoch seconds of the window end
    retry_after: int | None = None


@dataclass(frozen=True)
class RateLimitStatus:
    current: int
    limit: int
    remaining: int
    reset_at: int
    window: int


def headers(decision: RateLimitDecision) -> dict[str, str]:
    out = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(decision.reset_at),
    }
    if not decision.allowed and decision.retry_after is not None:
        out["Retry-After"] = str(decision.retry_after)
    return out


class RateLimiter:
    """
    Fixed-window limiter keyed by (endpoint class, actor, window start).

    `consume()` is the enforcing call: the check and the increment happen in one backend
    operation, so concurrent requests from the same actor cannot overrun the limit. When the
    backend is unreachable every call is admitted.
    """

    def __init__(
        self,
        backend: CounterBackend,
        *,
        table: RateLimitTable | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._backend = backend
        self._table = table or default_rate_limits()
        self._clock = clock

    def rule_for(self, endpoint: str, role: str | None) -> RateLimitRule:
        rules = self._table.get(endpoint) or self._table[DEFAULT_ENDPOINT]
        return rules[normalize_role(role)]

    def _window(
        self, endpoint: str, actor_id: str, role: str | None
    ) -> tuple[RateLimitRule, str, int, float]:
        rule = self.rule_for(endpoint, role)
        now = self._clock()
        start = window_start(now, rule.window)
        key = counter_key(endpoint=endpoint, actor_id=actor_id, start=start)
        return rule, key, start + rule.window, now

    @staticmethod
    def _fail_open(rule: RateLimitRule, reset_at: int) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=True, limit=rule.limit, remaining=rule.limit, reset_at=reset_at
        )

    @staticmethod
    def _retry_after(reset_at: int, now: float) -> int:
        return max(1, math.ceil(reset_at - now))

    async def allow(self, actor_id: str, endpoint: str, role: str | None = None) -> RateLimitDecision:
        """
        Peek at the current window without counting the request.
        """
        rule, key, reset_at, now = self._window(endpoint, actor_id, role)
        try:
            raw = await self._backend.get(key)
        except BackendUnavailable:
            logger.warning("rate limit backend unavailable; failing open endpoint=%s", endpoint)
            return self._fail_open(rule, reset_at)
        count = int(raw or 0)
        if count >= rule.limit:
            return RateLimitDecision(
                allowed=False,
                limit=rule.limit,
                remaining=0,
                reset_at=reset_at,
                retry_after=self._retry_after(reset_at, now),
            )
        return RateLimitDecision(
            allowed=True, limit=rule.limit, remaining=rule.limit - count, reset_at=reset_at
        )

    async def consume(
        self, actor_id: str, endpoint: str, role: str | None = None
    ) -> RateLimitDecision:
        rule, key, reset_at, now = self._window(endpoint, actor_id, role)
        try:
            allowed, count = await self._backend.incr_if_below(
                key, limit=rule.limit, ttl_s=max(1, reset_at - int(now))
            )
        except BackendUnavailable:
            logger.warning("rate limit backend unavailable; failing open endpoint=%s", endpoint)
            return self._fail_open(rule, reset_at)
        if not allowed:
            logger.info(
                "rate limit exceeded actor_id=%s endpoint=%s limit=%s", actor_id, endpoint, rule.limit
            )
            return RateLimitDecision(
                allowed=False,
                limit=rule.limit,
                remaining=0,
                reset_at=reset_at,
                retry_after=self._retry_after(reset_at, now),
            )
        return RateLimitDecision(
            allowed=True, limit=rule.limit, remaining=max(0, rule.limit - count), reset_at=reset_at
        )

    async def status(self, actor_id: str, endpoint: str, role: str | None = None) -> RateLimitStatus:
        rule, key, reset_at, _ = self._window(endpoint, actor_id, role)
        try:
            current = int(await self._backend.get(key) or 0)
        except BackendUnavailable:
            logger.warning("rate limit backend unavailable; reporting empty window")
            current = 0
        return RateLimitStatus(
            current=current,
            limit=rule.limit,
            remaining=max(0, rule.limit - current),
            reset_at=reset_at,
            window=rule.window,
        )

    async def reset(self, actor_id: str, endpoint: str, role: str | None = None) -> None:
        _, key, _, _ = self._window(endpoint, actor_id, role)
        await self._backend.delete(key)
