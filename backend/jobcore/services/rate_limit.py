"""Admission control for AI-backed operations: token buckets and daily counters.

Implements:
- Per-actor heavy-AI bucket (visual quotes; default 5/hour, burst 1)
- Per-actor general-AI bucket (text generation; default 30/min, burst 5)
- Per-actor daily AI calls counter (fixed offset from UTC, RL_TZ_OFFSET_MINUTES)

State lives in Firestore transactions, or in process memory when
STORE_BACKEND=memory. Exceeding a limit raises RateLimitError immediately;
nothing is queued.
"""
from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from google.cloud import firestore

from ..config import Settings, get_settings
from ..exceptions import RateLimitError


@dataclass
class RLHeaders:
    retry_after: int
    limit: int
    remaining: int
    reset_epoch: int

    def to_http(self) -> Dict[str, str]:
        return {
            "Retry-After": str(self.retry_after),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_epoch),
        }


def take_tokens(
    state: Dict[str, Any],
    now: float,
    capacity: int,
    refill_per_sec: float,
    cost: int,
) -> Tuple[bool, Dict[str, Any], RLHeaders]:
    """Refill a bucket up to `now` and try to take `cost` tokens.

    Returns (allowed, new_state, headers). On denial the state is unchanged.
    """
    tokens = float(state.get("tokens", float(capacity)))
    updated_at = float(state.get("updatedAt", now))
    elapsed = max(0.0, now - updated_at)
    # accrue
    tokens = min(float(capacity), tokens + elapsed * float(refill_per_sec))
    if tokens + 1e-9 >= float(cost):
        tokens_after = tokens - float(cost)
        new_state = {"tokens": tokens_after, "updatedAt": now, "capacity": int(capacity), "refillPerSec": float(refill_per_sec)}
        # Remaining rounded down for header semantics
        remaining = int(math.floor(tokens_after))
        reset_s = int(now + math.ceil((float(capacity) - tokens_after) / float(refill_per_sec))) if refill_per_sec > 0 else int(now)
        return True, new_state, RLHeaders(0, int(capacity), remaining, reset_s)

    need = float(cost) - tokens
    retry_after = max(1, int(math.ceil(need / float(refill_per_sec)))) if refill_per_sec > 0 else 60
    remaining = int(max(0.0, math.floor(tokens)))
    reset_s = int(now + math.ceil((float(capacity) - tokens) / float(refill_per_sec))) if refill_per_sec > 0 else int(now)
    return False, state, RLHeaders(retry_after, int(capacity), remaining, reset_s)


def return_tokens(state: Dict[str, Any], capacity: int, cost: int) -> Dict[str, Any]:
    """Put `cost` tokens back into a bucket, never above capacity."""
    if not state:
        return state
    tokens = min(float(capacity), float(state.get("tokens", 0.0)) + float(cost))
    return {**state, "tokens": tokens}


def count_daily(used: int, limit: int, cost: int, now_epoch: int, ttl: int) -> Tuple[bool, int, RLHeaders]:
    """Fixed-window counter step. Returns (allowed, new_used, headers)."""
    new_used = used + int(cost)
    if new_used > int(limit):
        # Deny; retry after the window rolls over
        return False, used, RLHeaders(ttl, int(limit), max(0, int(limit) - used), now_epoch + ttl)
    return True, new_used, RLHeaders(0, int(limit), max(0, int(limit) - new_used), now_epoch + ttl)


class RateLimiterService:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.client = None
        self._lock = threading.Lock()
        self._buckets: Dict[str, Dict[str, Any]] = {}
        self._counters: Dict[str, int] = {}
        if self.settings.STORE_BACKEND == "memory":
            return
        # Respect explicit database when provided
        if getattr(self.settings, "FIRESTORE_DATABASE_ID", ""):
            self.client = firestore.Client(
                project=self.settings.GCP_PROJECT or None,
                database=self.settings.FIRESTORE_DATABASE_ID,
            )
        else:
            self.client = firestore.Client()
        self._rl = self.client.collection("rl")
        self._daily = self.client.collection("rl_daily")

    # --- Helpers ---
    def _now(self) -> float:
        return time.time()

    def _local_now(self) -> datetime:
        offset_min = int(self.settings.RL_TZ_OFFSET_MINUTES)
        return datetime.fromtimestamp(self._now(), tz=timezone.utc) + timedelta(minutes=offset_min)

    def _local_date_str(self) -> str:
        return self._local_now().date().isoformat()

    def _sec_until_local_midnight(self) -> int:
        now_local = self._local_now()
        tomorrow = (now_local + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        return max(1, int((tomorrow - now_local).total_seconds()))

    # --- Token bucket consume ---
    def _consume_tokens(self, key: str, capacity: int, refill_per_sec: float, cost: int) -> Tuple[bool, RLHeaders]:
        if cost <= 0:
            return True, RLHeaders(0, capacity, capacity, int(self._now()))
        now = self._now()

        if self.client is None:
            with self._lock:
                ok, state, hdr = take_tokens(self._buckets.get(key, {}), now, capacity, refill_per_sec, cost)
                self._buckets[key] = state
                return ok, hdr

        doc = self._rl.document(key)

        @firestore.transactional
        def txn(tx: firestore.Transaction) -> Tuple[bool, RLHeaders]:
            snap = doc.get(transaction=tx)
            ok, state, hdr = take_tokens(snap.to_dict() or {}, now, capacity, refill_per_sec, cost)
            if ok:
                tx.set(doc, state, merge=True)
            return ok, hdr

        tx = self.client.transaction()
        return txn(tx)

    def _refund_tokens(self, key: str, capacity: int, cost: int) -> None:
        if self.client is None:
            with self._lock:
                state = return_tokens(self._buckets.get(key, {}), capacity, cost)
                if state:
                    self._buckets[key] = state
            return

        doc = self._rl.document(key)

        @firestore.transactional
        def txn(tx: firestore.Transaction) -> None:
            snap = doc.get(transaction=tx)
            state = return_tokens(snap.to_dict() or {}, capacity, cost)
            if state:
                tx.set(doc, {"tokens": state["tokens"]}, merge=True)

        txn(self.client.transaction())

    # --- Daily counters ---
    def _increment_daily(self, key: str, limit: int, cost: int) -> Tuple[bool, RLHeaders]:
        counter_key = f"{key}:{self._local_date_str()}"
        now_epoch = int(self._now())
        ttl = self._sec_until_local_midnight()

        if self.client is None:
            with self._lock:
                ok, used, hdr = count_daily(self._counters.get(counter_key, 0), limit, cost, now_epoch, ttl)
                self._counters[counter_key] = used
                return ok, hdr

        doc = self._daily.document(counter_key)

        @firestore.transactional
        def txn(tx: firestore.Transaction) -> Tuple[bool, RLHeaders]:
            snap = doc.get(transaction=tx)
            used = int((snap.to_dict() or {}).get("used", 0))
            ok, new_used, hdr = count_daily(used, limit, cost, now_epoch, ttl)
            if ok:
                tx.set(doc, {"used": new_used, "limit": int(limit), "updatedAt": now_epoch}, merge=True)
            return ok, hdr

        tx = self.client.transaction()
        return txn(tx)

    def _refund_daily(self, key: str, cost: int) -> None:
        counter_key = f"{key}:{self._local_date_str()}"

        if self.client is None:
            with self._lock:
                if counter_key in self._counters:
                    self._counters[counter_key] = max(0, self._counters[counter_key] - int(cost))
            return

        doc = self._daily.document(counter_key)

        @firestore.transactional
        def txn(tx: firestore.Transaction) -> None:
            snap = doc.get(transaction=tx)
            if not snap.exists:
                return
            used = int((snap.to_dict() or {}).get("used", 0))
            tx.set(doc, {"used": max(0, used - int(cost))}, merge=True)

        txn(self.client.transaction())

    def _enforce_daily(self, actor_id: str) -> None:
        ok, hdr = self._increment_daily(key=f"actor:{actor_id}:daily_ai", limit=self.settings.RL_DAILY_PER_ACTOR, cost=1)
        if not ok:
            raise RateLimitError(
                f"Daily AI limit reached ({self.settings.RL_DAILY_PER_ACTOR} calls). Try again tomorrow.",
                retry_after=hdr.retry_after,
                headers=hdr.to_http(),
            )

    # --- Public enforcement methods ---
    def enforce_heavy_ai(self, actor_id: str) -> None:
        """Admission check for image analysis (visual quotes)."""
        if not self.settings.RL_ENABLED:
            return
        per_hour = self.settings.RL_HEAVY_AI_PER_HOUR
        key = f"actor:{actor_id}:heavy_ai"
        ok, hdr = self._consume_tokens(
            key=key,
            capacity=self.settings.RL_HEAVY_AI_CAPACITY,
            refill_per_sec=float(per_hour) / 3600.0,
            cost=1,
        )
        if not ok:
            raise RateLimitError(
                f"Rate limit: max {per_hour} visual quotes/hour per user",
                retry_after=hdr.retry_after,
                headers=hdr.to_http(),
            )
        try:
            self._enforce_daily(actor_id)
        except RateLimitError:
            self._refund_tokens(key, self.settings.RL_HEAVY_AI_CAPACITY, cost=1)
            raise

    def enforce_general_ai(self, actor_id: str) -> None:
        """Admission check for text generation (service descriptions)."""
        if not self.settings.RL_ENABLED:
            return
        per_min = self.settings.RL_GENERAL_AI_PER_MIN
        key = f"actor:{actor_id}:general_ai"
        ok, hdr = self._consume_tokens(
            key=key,
            capacity=self.settings.RL_GENERAL_AI_CAPACITY,
            refill_per_sec=float(per_min) / 60.0,
            cost=1,
        )
        if not ok:
            raise RateLimitError(
                f"Rate limit: max {per_min} AI requests/min per user",
                retry_after=hdr.retry_after,
                headers=hdr.to_http(),
            )
        try:
            self._enforce_daily(actor_id)
        except RateLimitError:
            self._refund_tokens(key, self.settings.RL_GENERAL_AI_CAPACITY, cost=1)
            raise

    def refund_heavy_ai(self, actor_id: str) -> None:
        """Give back an admitted visual quote that never started."""
        if not self.settings.RL_ENABLED:
            return
        self._refund_tokens(f"actor:{actor_id}:heavy_ai", self.settings.RL_HEAVY_AI_CAPACITY, cost=1)
        self._refund_daily(f"actor:{actor_id}:daily_ai", cost=1)
