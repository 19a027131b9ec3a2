"""
Spawn deduplication cache.

Remembers which queued jobs a runner was already started for, so a job that
is still waiting for its runner to come online does not get a second one.
Once the TTL passes the start is presumed to have failed and one more runner
may be launched for the job.

Each runner pool owns its own cache: job IDs are only unique within what a
single Gitea scope can see.
"""

import enum
import logging
import threading
import time
from typing import Callable, Hashable, Iterable

log = logging.getLogger(__name__)

DEFAULT_SPAWN_TTL = 300.0  # seconds


class SpawnAction(enum.Enum):
    """What to do with a queued job."""

    SKIP = "skip"  # runner requested recently, still starting
    RETRY = "retry"  # runner requested but TTL expired
    NEW = "new"  # never seen


class SpawnCache:
    """Thread-safe map of job ID to the time a runner was requested for it."""

    def __init__(self, ttl: float = DEFAULT_SPAWN_TTL, clock: Callable[[], float] = time.time):
        if ttl <= 0:
            raise ValueError("ttl must be > 0")
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[Hashable, float] = {}

    def now(self) -> float:
        return self._clock()

    def should_spawn(self, job_id: Hashable, now: float | None = None) -> SpawnAction:
        if now is None:
            now = self.now()
        with self._lock:
            spawned_at = self._entries.get(job_id)
        if spawned_at is None:
            return SpawnAction.NEW
        if now - spawned_at < self.ttl:
            return SpawnAction.SKIP
        return SpawnAction.RETRY

    def record_spawn(self, job_id: Hashable, now: float | None = None) -> None:
        """Insert the job, or refresh its timestamp after a retry."""
        if now is None:
            now = self.now()
        with self._lock:
            self._entries[job_id] = now

    def reconcile(self, current_ids: Iterable[Hashable]) -> int:
        """Forget jobs that are no longer queued.

        Returns the number of entries removed. Timestamps of the remaining
        entries are left as they are.
        """
        keep = set(current_ids)
        with self._lock:
            stale = [job_id for job_id in self._entries if job_id not in keep]
            for job_id in stale:
                del self._entries[job_id]
        if stale:
            log.debug(f"Evicted {len(stale)} job(s) that left the queue: {stale}")
        return len(stale)

    def get(self, job_id: Hashable) -> float | None:
        with self._lock:
            return self._entries.get(job_id)

    def __contains__(self, job_id: Hashable) -> bool:
        with self._lock:
            return job_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
