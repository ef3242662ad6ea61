"""
Order Submission Rate Limiting

WHY: Checkout is unauthenticated, so abusive clients can flood order
creation or hammer one victim's email address from many sources. Each
submission is checked against an IP bucket AND an email bucket; either
being exhausted rejects the request.

DESIGN:
- Fixed window per composite key ("<limiter name>:<part>:<part>...")
- First request in a fresh (or expired) window always passes with count=1
- Buckets live in a pluggable store:
  - DatabaseBucketStore: rate_limit_buckets table with atomic UPDATEs (default)
  - MemoryBucketStore: per-process dict, lost on restart
- Approximate under races at window boundaries; this is abuse
  mitigation, not a security boundary.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Protocol

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import RateLimitBucket
from ..time_utils import epoch_ms


DEFAULT_WINDOW_MS = 15 * 60 * 1000
DEFAULT_MAX_REQUESTS = 10
MIN_WINDOW_MS = 1_000

# Forwarding headers checked in order; the first non-empty wins
CLIENT_IP_HEADERS = (
    "X-Forwarded-For",
    "X-Real-IP",
    "CF-Connecting-IP",
    "Fastly-Client-IP",
    "True-Client-IP",
)


class RateLimitedError(Exception):
    """Raised when a caller has exhausted its submission window."""
    def __init__(self, message: str, retry_after_ms: int):
        super().__init__(message)
        self.retry_after_ms = retry_after_ms

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.retry_after_ms / 1000))


@dataclass(frozen=True)
class RateLimitCheck:
    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: int
    retry_after_ms: int
    window_ms: int


class BucketStore(Protocol):
    def hit(self, key: str, now_ms: int, window_ms: int, max_requests: int) -> tuple[bool, int, int]:
        """Return (allowed, count, reset_at_ms) after counting one request."""

    def purge_expired(self, now_ms: int) -> int:
        ...

    def reset(self) -> None:
        ...


class MemoryBucketStore:
    """Thread-safe in-process buckets: {key: [count, reset_at_ms]}."""

    def __init__(self):
        self._buckets: dict[str, list[int]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, now_ms: int, window_ms: int, max_requests: int) -> tuple[bool, int, int]:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None or bucket[1] <= now_ms:
                reset_at = now_ms + window_ms
                self._buckets[key] = [1, reset_at]
                return True, 1, reset_at

            if bucket[0] >= max_requests:
                return False, bucket[0], bucket[1]

            bucket[0] += 1
            return True, bucket[0], bucket[1]

    def purge_expired(self, now_ms: int) -> int:
        with self._lock:
            expired = [k for k, (_, reset_at) in self._buckets.items() if reset_at <= now_ms]
            for k in expired:
                del self._buckets[k]
            return len(expired)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


def _from_epoch_ms(now_ms: int) -> datetime:
    return datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc).replace(tzinfo=None)


class DatabaseBucketStore:
    """
    Buckets stored in rate_limit_buckets.

    The count increment is a single conditional UPDATE so concurrent
    requests cannot both take the last slot. Window rollover and first
    insert may race; the loser simply re-reads.
    """

    def hit(self, key: str, now_ms: int, window_ms: int, max_requests: int) -> tuple[bool, int, int]:
        now = _from_epoch_ms(now_ms)
        reset_at = now + timedelta(milliseconds=window_ms)

        for _ in range(3):
            bucket = db.session.query(RateLimitBucket).filter_by(key=key).first()

            if bucket is None:
                db.session.add(RateLimitBucket(key=key, count=1, window_reset_at=reset_at))
                try:
                    db.session.commit()
                except IntegrityError:
                    db.session.rollback()
                    continue
                return True, 1, epoch_ms(reset_at)

            if bucket.window_reset_at <= now:
                result = db.session.execute(
                    update(RateLimitBucket)
                    .where(
                        RateLimitBucket.id == bucket.id,
                        RateLimitBucket.window_reset_at == bucket.window_reset_at,
                    )
                    .values(count=1, window_reset_at=reset_at)
                )
                db.session.commit()
                if result.rowcount:
                    return True, 1, epoch_ms(reset_at)
                db.session.expire_all()
                continue

            result = db.session.execute(
                update(RateLimitBucket)
                .where(RateLimitBucket.id == bucket.id, RateLimitBucket.count < max_requests)
                .values(count=RateLimitBucket.count + 1)
            )
            db.session.commit()
            db.session.expire_all()
            current = db.session.query(RateLimitBucket).filter_by(key=key).first()
            count = current.count if current else 1
            window_end = epoch_ms(current.window_reset_at) if current else epoch_ms(reset_at)
            return bool(result.rowcount), count, window_end

        # Persistent contention on one key: fail open, the next request retries
        return True, 1, epoch_ms(reset_at)

    def purge_expired(self, now_ms: int) -> int:
        now = _from_epoch_ms(now_ms)
        deleted = db.session.query(RateLimitBucket).filter(RateLimitBucket.window_reset_at <= now).delete()
        db.session.commit()
        return deleted

    def reset(self) -> None:
        db.session.query(RateLimitBucket).delete()
        db.session.commit()


def _normalize_part(part) -> str | None:
    if part is None:
        return None
    if isinstance(part, bool):
        return "1" if part else "0"
    if isinstance(part, str):
        trimmed = part.strip().lower()
        return trimmed or None
    if isinstance(part, (int, float)):
        if isinstance(part, float) and not math.isfinite(part):
            return None
        return str(part)
    return None


def _system_clock_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    """
    Fixed-window limiter.

    Usage:
        limiter.check(["ip", "203.0.113.9"])
        limiter.check(["email", "buyer@example.com"])
    """

    def __init__(
        self,
        name: str,
        *,
        window_ms: int = DEFAULT_WINDOW_MS,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        store: BucketStore | None = None,
        clock: Callable[[], int] | None = None,
    ):
        self.name = (name or "").strip().lower() or "rate-limit"
        self.window_ms = max(MIN_WINDOW_MS, int(window_ms) if window_ms and window_ms > 0 else 60_000)
        self.max_requests = max(1, int(max_requests) if max_requests and max_requests > 0 else 1)
        self.store = store or MemoryBucketStore()
        self._clock = clock or _system_clock_ms

    def build_key(self, parts: Iterable) -> str:
        normalized = [p for p in (_normalize_part(part) for part in parts) if p is not None]
        if not normalized:
            return self.name
        return ":".join([self.name, *normalized])

    def check(self, parts: Iterable) -> RateLimitCheck:
        key = self.build_key(parts)
        now_ms = self._clock()
        allowed, count, reset_at_ms = self.store.hit(key, now_ms, self.window_ms, self.max_requests)

        if not allowed:
            return RateLimitCheck(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                reset_at_ms=reset_at_ms,
                retry_after_ms=max(0, reset_at_ms - now_ms),
                window_ms=self.window_ms,
            )

        return RateLimitCheck(
            allowed=True,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset_at_ms=reset_at_ms,
            retry_after_ms=0,
            window_ms=self.window_ms,
        )

    def purge_expired(self) -> int:
        """Drop buckets whose window has ended; returns how many."""
        return self.store.purge_expired(self._clock())

    def reset(self) -> None:
        self.store.reset()


def build_order_rate_limiter(config) -> RateLimiter:
    """Create the order-creation limiter from app config."""
    storage = (config.get("RATE_LIMIT_STORAGE") or "database").strip().lower()
    store = DatabaseBucketStore() if storage == "database" else MemoryBucketStore()
    return RateLimiter(
        "order-create",
        window_ms=config.get("ORDER_RATE_LIMIT_WINDOW_MS", DEFAULT_WINDOW_MS),
        max_requests=config.get("ORDER_RATE_LIMIT_MAX_REQUESTS", DEFAULT_MAX_REQUESTS),
        store=store,
    )


def check_order_submission(limiter: RateLimiter, client_ip: str, email: str) -> None:
    """
    Gate one order submission on both the IP and the email bucket.

    Both buckets are always counted. Raises RateLimitedError with the
    longer of the two retry-after durations.
    """
    ip_check = limiter.check(["ip", client_ip])
    email_check = limiter.check(["email", email])

    denied = [c for c in (ip_check, email_check) if not c.allowed]
    if denied:
        retry_after_ms = max(c.retry_after_ms for c in denied)
        raise RateLimitedError(
            "Too many order attempts. Please wait before trying again.",
            retry_after_ms=retry_after_ms,
        )


def extract_client_ip(headers, fallback: str | None = "unknown") -> str:
    """Best client IP from proxy headers, else the fallback (remote addr)."""
    if headers is not None:
        for header in CLIENT_IP_HEADERS:
            value = headers.get(header)
            if not value:
                continue
            if header == "X-Forwarded-For":
                value = value.split(",")[0]
            value = value.strip()
            if value:
                return value
    return fallback or "unknown"
