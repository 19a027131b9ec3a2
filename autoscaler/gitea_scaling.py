"""
One reconciliation pass for a runner pool.

A pass counts the pool's live runners, asks Gitea which matching jobs are
waiting, drops jobs a runner was recently started for, and starts runners for
the rest until the pool is full.
"""

import logging
import threading
from dataclasses import dataclass, field

from gitea_client import GiteaClient, PassCancelled, QueuedJob
from gitea_launcher import Launcher, LaunchError
from gitea_pools import RunnerPool
from gitea_labels import effective_labels
from gitea_spawn_cache import SpawnAction, SpawnCache

log = logging.getLogger(__name__)


@dataclass
class ScalingDecision:
    """Outcome of a single pass."""

    active_count: int
    available_slots: int
    labels: list = field(default_factory=list)
    queued: list = field(default_factory=list)
    candidates: list = field(default_factory=list)
    spawned: list = field(default_factory=list)
    runners: list = field(default_factory=list)
    evicted: int = 0

    @property
    def skipped(self) -> int:
        """Queued jobs not picked this pass (recently spawned or duplicates)."""
        return len(self.queued) - len(self.candidates)

    def summary(self) -> dict:
        return {
            "active_runners": self.active_count,
            "available_slots": self.available_slots,
            "queued_jobs": len(self.queued),
            "candidates": len(self.candidates),
            "spawned": len(self.spawned),
            "spawned_job_ids": [job.id for job in self.spawned],
        }


class SpawnError(Exception):
    """Starting a runner failed part way through a pass.

    Runners started earlier in the pass are left running; ``decision`` holds
    what was done before the failure.
    """

    def __init__(self, message: str, decision: ScalingDecision):
        super().__init__(message)
        self.decision = decision


def select_candidates(
    jobs: list[QueuedJob], cache: SpawnCache, now: float
) -> list[tuple[QueuedJob, SpawnAction]]:
    """Pick jobs that need a runner, keeping the order Gitea returned them in.

    A job ID seen earlier in the same list is skipped, since the cache is only
    updated once runners have been started.
    """
    candidates = []
    claimed = set()
    for job in jobs:
        if job.id in claimed:
            continue
        action = cache.should_spawn(job.id, now)
        if action == SpawnAction.SKIP:
            log.debug(f"Job {job.id}: runner requested recently, skipping")
            continue
        if action == SpawnAction.RETRY:
            log.info(f"Job {job.id}: runner did not pick it up within {cache.ttl:.0f}s, retrying")
        claimed.add(job.id)
        candidates.append((job, action))
    return candidates


class ScalingEngine:
    """Scales one pool. Holds the pool's spawn cache between passes."""

    def __init__(
        self,
        client: GiteaClient,
        launcher: Launcher,
        cache: SpawnCache | None = None,
        default_labels: list[str] | None = None,
    ):
        self.client = client
        self.launcher = launcher
        self.cache = cache if cache is not None else SpawnCache()
        self.default_labels = default_labels

    def run_pass(
        self, pool: RunnerPool, active_count: int, cancel: threading.Event | None = None
    ) -> ScalingDecision:
        available_slots = max(0, pool.max_active_runners - active_count)
        decision = ScalingDecision(active_count=active_count, available_slots=available_slots)

        if available_slots == 0:
            log.info(
                f"Pool {pool.name}: max active runners reached "
                f"({active_count}/{pool.max_active_runners}), skipping"
            )
            return decision

        decision.labels = effective_labels(list(pool.labels), self.default_labels)

        log.info(f"Pool {pool.name}: checking {pool.describe()} for queued jobs")
        jobs = self.client.fetch_queued_jobs(
            pool.scope,
            org=pool.org,
            user=pool.user,
            repo=pool.repo,
            labels=decision.labels,
            cancel=cancel,
        )
        decision.queued = jobs

        now = self.cache.now()
        selected = select_candidates(jobs, self.cache, now)
        decision.candidates = [job for job, _ in selected]

        try:
            self._spawn(pool, decision, selected[:available_slots], cancel)
        finally:
            decision.evicted = self.cache.reconcile(job.id for job in jobs)

        log.info(
            f"Pool {pool.name}: queued={len(jobs)}, candidates={len(decision.candidates)}, "
            f"slots={available_slots}, spawned={len(decision.spawned)}"
        )
        return decision

    def _spawn(self, pool, decision, selected, cancel):
        if not selected:
            return

        token = pool.registration_token
        if not token:
            raise SpawnError(
                f"Pool {pool.name}: registration token env var "
                f"{pool.registration_token_env} is not set",
                decision,
            )

        for job, action in selected:
            if cancel is not None and cancel.is_set():
                raise PassCancelled(f"Pool {pool.name}: cancelled while starting runners")
            try:
                runner = self.launcher.launch(pool, decision.labels, token)
            except LaunchError as e:
                raise SpawnError(f"Pool {pool.name}: launch for job {job.id} failed: {e}", decision) from e

            self.cache.record_spawn(job.id, self.cache.now())
            decision.spawned.append(job)
            decision.runners.append(runner)
            log.info(f"Pool {pool.name}: started {runner} for job {job.id} ({action.value})")
