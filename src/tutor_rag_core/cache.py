from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from tutor_rag_core.errors import BackendUnavailable
from tutor_rag_core.interfaces import CounterBackend
from tutor_rag_core.models import Source
from tutor_rag_core.util import normalize_question, sha256_bytes

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"

# USD per 1K tokens.
PRICING: dict[str, dict[str, float]] = {
    "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
    "gpt-4o": {"input": 0.0025, "output": 0.01},
    "text-embedding-3-large": {"input": 0.00013, "output": 0.0},
}

# Answers are mostly prompt: context blocks plus history.
INPUT_SHARE = 0.7

TIMEFRAMES = ("hour", "day", "week")
_BUCKET_TTL_S = {"hour": 3600, "day": 86400, "week": 604800}

_HIT = "analytics:cache:hit"
_MISS = "analytics:cache:miss"
_TOKENS_SAVED = "analytics:tokens:saved"
_COST_SAVED = "analytics:cost:saved"
_ENDPOINT = "analytics:endpoint"


def estimate_cost(tokens: int, model: str | None = None) -> float:
    pricing = PRICING.get(model or DEFAULT_MODEL) or PRICING[DEFAULT_MODEL]
    input_tokens = tokens * INPUT_SHARE
    output_tokens = tokens * (1 - INPUT_SHARE)
    return input_tokens * pricing["input"] / 1000 + output_tokens * pricing["output"] / 1000


def qa_cache_key(*, document_id: str, content_version: int, language: str, question: str) -> str:
    """
    Cache key for a document answer. `document_id` must be the canonical (original) id so
    reference holders share entries; `content_version` changes on reprocessing.
    """
    digest = sha256_bytes(normalize_question(question).encode("utf-8"))[:32]
    lang = (language or "en").strip().lower()
    return f"qa:{document_id}:v{content_version}:{lang}:{digest}"


def time_bucket(now: datetime, timeframe: str) -> str:
    if timeframe == "hour":
        return now.strftime("%Y-%m-%d-%H")
    if timeframe == "day":
        return now.strftime("%Y-%m-%d")
    if timeframe == "week":
        year, week, _ = now.isocalendar()
        return f"{year}-W{week:02d}"
    raise ValueError(f"Unknown timeframe: {timeframe}")


@dataclass(frozen=True)
class CachedAnswer:
    answer: str
    sources: list[Source]
    tokens_used: int
    model: str | None = None
    cached_at: float | None = None

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> CachedAnswer:
        data = json.loads(raw)
        return cls(
            answer=data["answer"],
            sources=[Source(**s) for s in data.get("sources") or []],
            tokens_used=int(data.get("tokens_used") or 0),
            model=data.get("model"),
            cached_at=data.get("cached_at"),
        )


@dataclass(frozen=True)
class CacheStats:
    period: str
    hits: int
    misses: int
    tokens_saved: int
    cost_saved: float
    endpoints: dict[str, dict[str, int]] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        return self.hits / self.total if self.total else 0.0


class SemanticResponseCache:
    """
    Exact-match answer cache with hit/miss accounting.

    The backend is optional infrastructure: read errors count as misses and write errors are
    dropped, both with a warning.
    """

    def __init__(
        self,
        backend: CounterBackend,
        *,
        ttls: dict[str, int] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._backend = backend
        self._ttls = {"answer": 7 * 24 * 60 * 60, **(ttls or {})}
        self._clock = clock

    def ttl_for(self, tier: str) -> int:
        return self._ttls[tier]

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def get(self, key: str, *, endpoint: str = "ai_query") -> CachedAnswer | None:
        try:
            raw = await self._backend.get(key)
        except BackendUnavailable:
            logger.warning("cache read failed; treating as miss key=%s", key)
            raw = None
        if raw is None:
            await self.record_miss(endpoint=endpoint)
            return None
        try:
            entry = CachedAnswer.from_json(raw)
        except (ValueError, KeyError, TypeError):
            logger.warning("cache entry unreadable; treating as miss key=%s", key)
            await self.record_miss(endpoint=endpoint)
            return None
        await self.record_hit(tokens=entry.tokens_used, model=entry.model, endpoint=endpoint)
        return entry

    async def put(self, key: str, entry: CachedAnswer, *, tier: str = "answer") -> None:
        if entry.cached_at is None:
            entry = CachedAnswer(
                answer=entry.answer,
                sources=entry.sources,
                tokens_used=entry.tokens_used,
                model=entry.model,
                cached_at=self._clock(),
            )
        try:
            await self._backend.set(key, entry.to_json(), ttl_s=self.ttl_for(tier))
        except BackendUnavailable:
            logger.warning("cache write failed; dropping entry key=%s", key)

    async def record_hit(self, *, tokens: int, model: str | None, endpoint: str) -> None:
        now = self._now()
        cost = estimate_cost(tokens, model)
        try:
            for tf in TIMEFRAMES:
                bucket = time_bucket(now, tf)
                ttl = _BUCKET_TTL_S[tf]
                await self._backend.incr(f"{_HIT}:{bucket}", ttl_s=ttl)
                await self._backend.incr(f"{_TOKENS_SAVED}:{bucket}", tokens, ttl_s=ttl)
                await self._backend.incr_float(f"{_COST_SAVED}:{bucket}", cost, ttl_s=ttl)
                await self._backend.incr(f"{_ENDPOINT}:{endpoint}:hit:{bucket}", ttl_s=ttl)
        except BackendUnavailable:
            logger.warning("cache analytics write failed (hit)")

    async def record_miss(self, *, endpoint: str) -> None:
        now = self._now()
        try:
            for tf in TIMEFRAMES:
                bucket = time_bucket(now, tf)
                ttl = _BUCKET_TTL_S[tf]
                await self._backend.incr(f"{_MISS}:{bucket}", ttl_s=ttl)
                await self._backend.incr(f"{_ENDPOINT}:{endpoint}:miss:{bucket}", ttl_s=ttl)
        except BackendUnavailable:
            logger.warning("cache analytics write failed (miss)")

    async def stats(
        self, timeframe: str = "day", *, endpoints: tuple[str, ...] = ("ai_query",)
    ) -> CacheStats:
        bucket = time_bucket(self._now(), timeframe)

        async def read(key: str) -> str | None:
            try:
                return await self._backend.get(key)
            except BackendUnavailable:
                logger.warning("cache analytics read failed key=%s", key)
                return None

        per_endpoint: dict[str, dict[str, int]] = {}
        for ep in endpoints:
            per_endpoint[ep] = {
                "hits": int(await read(f"{_ENDPOINT}:{ep}:hit:{bucket}") or 0),
                "misses": int(await read(f"{_ENDPOINT}:{ep}:miss:{bucket}") or 0),
            }
        return CacheStats(
            period=timeframe,
            hits=int(await read(f"{_HIT}:{bucket}") or 0),
            misses=int(await read(f"{_MISS}:{bucket}") or 0),
            tokens_saved=int(await read(f"{_TOKENS_SAVED}:{bucket}") or 0),
            cost_saved=float(await read(f"{_COST_SAVED}:{bucket}") or 0.0),
            endpoints=per_endpoint,
        )
