#!/usr/bin/env python3
"""
Gitea Actions Runner Autoscaler.

Polls Gitea for queued jobs matching each runner pool's labels and starts
ephemeral act_runner containers for them, up to each pool's limit. Jobs a
runner was already started for are remembered for a while so a slow-starting
runner does not get a twin.
"""

import json
import logging
import os
import signal
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone

from gitea_client import GiteaClient, GiteaError
from gitea_launcher import DEFAULT_RUNNER_IMAGE, DockerLauncher, Launcher, LaunchError
from gitea_pools import RunnerPool, load_pools, validate_pools
from gitea_labels import DEFAULT_RUNNER_LABELS, MATCHERS, get_matcher, parse_labels
from gitea_scaling import ScalingDecision, ScalingEngine, SpawnError
from gitea_spawn_cache import SpawnCache

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# Configure logging with timestamps
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[logging.StreamHandler(sys.stdout)],
)
log = logging.getLogger(__name__)

# Loop configuration
POLL_INTERVAL = int(os.environ.get("POLL_INTERVAL", "10"))  # seconds
REQUEST_TIMEOUT = float(os.environ.get("REQUEST_TIMEOUT", "30"))  # seconds
PAGE_SIZE = int(os.environ.get("PAGE_SIZE", "50"))
MAX_WORKERS = int(os.environ.get("MAX_WORKERS", "4"))

# How long a started runner may take to pick up its job before we retry
SPAWN_TTL = float(os.environ.get("SPAWN_TTL", "300"))  # seconds

# Label handling
if "DEFAULT_RUNNER_LABELS" in os.environ:
    DEFAULT_LABELS = parse_labels(os.environ["DEFAULT_RUNNER_LABELS"])
else:
    DEFAULT_LABELS = list(DEFAULT_RUNNER_LABELS)
LABEL_MATCHING = os.environ.get("LABEL_MATCHING", "schema")

# Runner containers
RUNNER_IMAGE = os.environ.get("RUNNER_IMAGE", DEFAULT_RUNNER_IMAGE)
RUNNER_NETWORK = os.environ.get("RUNNER_NETWORK") or None

STATUS_FILE = os.environ.get("STATUS_FILE")


def validate_config() -> None:
    """Validate configuration on startup. Exits if invalid."""
    errors = []

    if POLL_INTERVAL <= 0:
        errors.append("POLL_INTERVAL must be > 0")
    if REQUEST_TIMEOUT <= 0:
        errors.append("REQUEST_TIMEOUT must be > 0")
    if PAGE_SIZE < 1:
        errors.append("PAGE_SIZE must be >= 1")
    if MAX_WORKERS < 1:
        errors.append("MAX_WORKERS must be >= 1")
    if SPAWN_TTL <= 0:
        errors.append("SPAWN_TTL must be > 0")
    if LABEL_MATCHING not in MATCHERS:
        errors.append(f"LABEL_MATCHING must be one of: {', '.join(sorted(MATCHERS))}")

    if errors:
        for e in errors:
            log.error(f"Config error: {e}")
        sys.exit(1)


def load_and_validate_pools() -> list[RunnerPool]:
    """Load pool definitions. Exits if any is invalid."""
    try:
        pools = load_pools()
    except (OSError, ValueError) as e:
        log.error(f"Config error: failed to load runner pools: {e}")
        sys.exit(1)

    errors = validate_pools(pools)
    if errors:
        for e in errors:
            log.error(f"Config error: {e}")
        sys.exit(1)
    return pools


@dataclass
class PoolStatus:
    """Last observed state of a pool."""

    active_runners: int = 0
    last_check_time: str | None = None
    last_decision: dict = field(default_factory=dict)
    last_error: str | None = None


def build_engine(pool: RunnerPool, launcher: Launcher) -> ScalingEngine:
    client = GiteaClient(
        pool.gitea_url,
        pool.auth_token or "",
        timeout=REQUEST_TIMEOUT,
        page_size=PAGE_SIZE,
        matcher=get_matcher(LABEL_MATCHING),
    )
    return ScalingEngine(
        client,
        launcher,
        cache=SpawnCache(ttl=SPAWN_TTL),
        default_labels=DEFAULT_LABELS,
    )


def reconcile_pool(
    pool: RunnerPool,
    engine: ScalingEngine,
    launcher: Launcher,
    status: PoolStatus,
    cancel: threading.Event | None = None,
) -> ScalingDecision | None:
    """Run one pass for a pool, recording the outcome in ``status``.

    Errors are logged and kept on the status; they never propagate, so one
    failing pool does not affect the others.
    """
    status.last_error = None
    status.last_decision = {}
    try:
        active = launcher.count_active(pool)
        status.active_runners = active
        status.last_check_time = datetime.now(timezone.utc).isoformat()
        log.info(f"Pool {pool.name}: {active}/{pool.max_active_runners} active runners")

        decision = engine.run_pass(pool, active, cancel=cancel)
        status.last_decision = decision.summary()
        return decision
    except SpawnError as e:
        log.error(f"Spawn error: {e}")
        status.last_decision = e.decision.summary()
        status.last_error = str(e)
    except (GiteaError, LaunchError) as e:
        log.error(f"Pool {pool.name}: {type(e).__name__}: {e}")
        status.last_error = str(e)
    except Exception as e:
        log.exception(f"Pool {pool.name}: unexpected error: {e}")
        status.last_error = str(e)
    return None


def write_status(path: str, statuses: dict[str, PoolStatus]) -> None:
    """Write per-pool status as JSON, replacing the file atomically."""
    data = {
        name: {
            "active_runners": s.active_runners,
            "last_check_time": s.last_check_time,
            "last_decision": s.last_decision,
            "last_error": s.last_error,
        }
        for name, s in statuses.items()
    }
    tmp = f"{path}.tmp"
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, path)
    except OSError as e:
        log.warning(f"Failed to write status file {path}: {e}")


def run_loop(
    pools: list[RunnerPool],
    launcher: Launcher,
    stop: threading.Event,
    engines: dict[str, ScalingEngine] | None = None,
    max_iterations: int | None = None,
) -> dict[str, PoolStatus]:
    """Reconcile every pool, then wait POLL_INTERVAL, until ``stop`` is set.

    Pools are reconciled concurrently; a pool never has two passes running at
    once because each round waits for all of them.
    """
    if engines is None:
        engines = {pool.name: build_engine(pool, launcher) for pool in pools}
    statuses = {pool.name: PoolStatus() for pool in pools}

    iteration = 0
    with ThreadPoolExecutor(max_workers=min(MAX_WORKERS, len(pools)) or 1) as executor:
        while not stop.is_set():
            futures = [
                executor.submit(
                    reconcile_pool, pool, engines[pool.name], launcher, statuses[pool.name], stop
                )
                for pool in pools
            ]
            for future in futures:
                future.result()

            if STATUS_FILE:
                write_status(STATUS_FILE, statuses)

            iteration += 1
            if max_iterations is not None and iteration >= max_iterations:
                break
            stop.wait(POLL_INTERVAL)

    return statuses


def main():
    """Main autoscaler loop (runs until SIGTERM/SIGINT)."""
    log.info("Starting Gitea Actions Runner Autoscaler")
    log.info(f"  Poll interval: {POLL_INTERVAL}s")
    log.info(f"  Request timeout: {REQUEST_TIMEOUT}s")
    log.info(f"  Page size: {PAGE_SIZE}")
    log.info(f"  Spawn TTL: {SPAWN_TTL}s")
    log.info(f"  Label matching: {LABEL_MATCHING}")
    log.info(f"  Default labels: {DEFAULT_LABELS}")
    log.info(f"  Runner image: {RUNNER_IMAGE}")

    validate_config()
    pools = load_and_validate_pools()
    for pool in pools:
        log.info(
            f"  Pool {pool.name}: {pool.describe()} on {pool.gitea_url}, "
            f"max {pool.max_active_runners} runners, labels {list(pool.labels)}"
        )

    stop = threading.Event()

    def handle_signal(signum, frame):
        log.info(f"Received signal {signum}, stopping")
        stop.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    launcher = DockerLauncher(image=RUNNER_IMAGE, network=RUNNER_NETWORK)
    run_loop(pools, launcher, stop)
    log.info("Autoscaler stopped")


if __name__ == "__main__":
    main()
