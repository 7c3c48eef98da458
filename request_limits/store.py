"""
In-memory fixed window counters keyed by scope/path/identity.

State is process-local and advisory: a restart, redeploy or a second worker
process each start from empty counters. Iteration order of the backing
OrderedDict doubles as recency order, oldest first.
"""
import math
from collections import OrderedDict
from dataclasses import dataclass
from itertools import islice
from threading import RLock
from typing import Optional


DEFAULT_MAX_ENTRIES = 10_000
DEFAULT_SWEEP_THRESHOLD = 5_000
DEFAULT_SWEEP_BATCH = 1_000


@dataclass
class Bucket:
    count: int
    reset_at: int  # epoch ms


@dataclass
class ConsumeResult:
    ok: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_seconds: int


class BucketStore:
    """
    Fixed window counter store with bounded size.

    Two mechanisms keep memory bounded, neither doing unbounded work per call:
    an expiry sweep over at most `sweep_batch` of the oldest entries once the
    store grows past `sweep_threshold`, and a hard cap that drops the oldest
    entries (expired or not) once `max_entries` is exceeded.
    """

    def __init__(self, max_entries=DEFAULT_MAX_ENTRIES,
                 sweep_threshold=DEFAULT_SWEEP_THRESHOLD,
                 sweep_batch=DEFAULT_SWEEP_BATCH):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.sweep_threshold = sweep_threshold
        self.sweep_batch = sweep_batch
        self._buckets: "OrderedDict[str, Bucket]" = OrderedDict()

    def __len__(self):
        return len(self._buckets)

    def __contains__(self, key):
        return key in self._buckets

    def get(self, key) -> Optional[Bucket]:
        return self._buckets.get(key)

    def clear(self):
        self._buckets.clear()

    def consume(self, key: str, limit: int, window_ms: int, now: int) -> ConsumeResult:
        """Count one request against `key` and report whether it fits the window."""
        if len(self._buckets) > self.sweep_threshold:
            self.sweep_expired(now)

        bucket = self._buckets.get(key)

        if bucket is None or bucket.reset_at <= now:
            # fresh window goes to the most recent end
            self._buckets.pop(key, None)
            bucket = Bucket(count=1, reset_at=now + window_ms)
            self._buckets[key] = bucket
            self._enforce_max_entries()
            return ConsumeResult(
                ok=True,
                limit=limit,
                remaining=max(limit - 1, 0),
                reset_at=bucket.reset_at,
                retry_after_seconds=math.ceil(window_ms / 1000),
            )

        self._buckets.move_to_end(key)
        retry_after = max(1, math.ceil((bucket.reset_at - now) / 1000))

        if bucket.count >= limit:
            return ConsumeResult(
                ok=False,
                limit=limit,
                remaining=0,
                reset_at=bucket.reset_at,
                retry_after_seconds=retry_after,
            )

        bucket.count += 1
        return ConsumeResult(
            ok=True,
            limit=limit,
            remaining=max(limit - bucket.count, 0),
            reset_at=bucket.reset_at,
            retry_after_seconds=retry_after,
        )

    def sweep_expired(self, now: int) -> int:
        """Drop expired buckets among the oldest `sweep_batch` entries."""
        expired = [
            key for key, bucket in islice(self._buckets.items(), self.sweep_batch)
            if bucket.reset_at <= now
        ]
        for key in expired:
            del self._buckets[key]
        return len(expired)

    def _enforce_max_entries(self) -> int:
        overflow = len(self._buckets) - self.max_entries
        if overflow <= 0:
            return 0
        to_remove = max(math.ceil(self.max_entries * 0.1), overflow)
        removed = 0
        while self._buckets and removed < to_remove:
            self._buckets.popitem(last=False)
            removed += 1
        return removed


class LockedBucketStore(BucketStore):
    """BucketStore for threaded servers: every read-modify-write holds a lock."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._lock = RLock()

    def consume(self, key, limit, window_ms, now):
        with self._lock:
            return super().consume(key, limit, window_ms, now)

    def sweep_expired(self, now):
        with self._lock:
            return super().sweep_expired(now)

    def clear(self):
        with self._lock:
            super().clear()
