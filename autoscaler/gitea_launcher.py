"""
Runner launchers.

A launcher starts one ephemeral act_runner per request and reports how many
runners of a pool are still alive. The Docker launcher runs each runner as a
detached, auto-removed container.
"""

import abc
import logging
import secrets
import string

import docker
from docker.errors import DockerException

from gitea_pools import RunnerPool

log = logging.getLogger(__name__)

DEFAULT_RUNNER_IMAGE = "gitea/act_runner:nightly-dind-rootless"
POOL_LABEL = "gitea.runner-pool"
MANAGED_BY_LABEL = "gitea.managed-by"
MANAGED_BY = "gitea-runner-autoscaler"

# Container states that no longer count as a live runner.
FINISHED_STATES = ("exited", "dead")

_NAME_CHARS = string.ascii_lowercase + string.digits


class LaunchError(Exception):
    """The launcher could not start or list runners."""


def random_suffix(length: int = 8) -> str:
    return "".join(secrets.choice(_NAME_CHARS) for _ in range(length))


def runner_environment(pool: RunnerPool, labels: list[str], registration_token: str, name: str) -> dict:
    env = dict(pool.extra_env)
    env.update(
        {
            "GITEA_INSTANCE_URL": pool.gitea_url,
            "GITEA_RUNNER_REGISTRATION_TOKEN": registration_token,
            "GITEA_RUNNER_EPHEMERAL": "true",
            "GITEA_RUNNER_NAME": name,
        }
    )
    if labels:
        env["GITEA_RUNNER_LABELS"] = ",".join(labels)
    return env


class Launcher(abc.ABC):
    """Interface the scaling engine uses to create runners."""

    @abc.abstractmethod
    def count_active(self, pool: RunnerPool) -> int:
        """Return how many runners of the pool are still alive."""

    @abc.abstractmethod
    def launch(self, pool: RunnerPool, labels: list[str], registration_token: str) -> str:
        """Start one runner and return its name."""


class DockerLauncher(Launcher):
    def __init__(self, image: str = DEFAULT_RUNNER_IMAGE, network: str | None = None, client=None):
        self.image = image
        self.network = network
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def count_active(self, pool: RunnerPool) -> int:
        try:
            containers = self.client.containers.list(
                all=True, filters={"label": f"{POOL_LABEL}={pool.name}"}
            )
        except DockerException as e:
            raise LaunchError(f"Failed to list runners for pool {pool.name}: {e}") from e

        active = sum(1 for c in containers if c.status not in FINISHED_STATES)
        log.debug(f"Pool {pool.name}: {active} active of {len(containers)} runner container(s)")
        return active

    def launch(self, pool: RunnerPool, labels: list[str], registration_token: str) -> str:
        name = f"{pool.name}-{random_suffix()}"
        kwargs = {
            "image": self.image,
            "name": name,
            "detach": True,
            "auto_remove": True,
            "privileged": True,
            "environment": runner_environment(pool, labels, registration_token, name),
            "labels": {
                "app": pool.name,
                POOL_LABEL: pool.name,
                MANAGED_BY_LABEL: MANAGED_BY,
            },
        }
        if self.network:
            kwargs["network"] = self.network

        try:
            self.client.containers.run(**kwargs)
        except DockerException as e:
            raise LaunchError(f"Failed to start runner {name}: {e}") from e

        log.info(f"Started runner container {name} for pool {pool.name}")
        return name
