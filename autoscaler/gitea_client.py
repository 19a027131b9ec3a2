"""
Gitea Actions API client.

Finds the jobs waiting for a runner that a pool could pick up. Depending on
the pool's scope this queries one repository, one organization, every
repository of a user, or the admin endpoint covering the whole instance.
"""

import logging
import threading
from dataclasses import dataclass, field

import requests

from gitea_labels import LabelMatcher, SchemaLabelMatcher

log = logging.getLogger(__name__)

# Job states that still need a runner.
PENDING_STATUSES = ("queued", "waiting", "pending")

DEFAULT_PAGE_SIZE = 50
DEFAULT_TIMEOUT = 30  # seconds


class GiteaError(Exception):
    """Base class for everything that can go wrong talking to Gitea."""


class GiteaAPIError(GiteaError):
    """Gitea answered with a non-success status."""

    def __init__(self, message: str, status_code: int, operation: str, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.operation = operation
        self.body = body


class AuthenticationFailed(GiteaAPIError):
    pass


class AccessDenied(GiteaAPIError):
    pass


class ResourceNotFound(GiteaAPIError):
    pass


class RateLimited(GiteaAPIError):
    pass


class RemoteServerError(GiteaAPIError):
    pass


class UnexpectedStatus(GiteaAPIError):
    pass


class TransportError(GiteaError):
    """Timeout, refused connection or another failure below HTTP."""


class DecodeError(GiteaError):
    """Response body was not the JSON we expected."""


class PassCancelled(GiteaError):
    """The stop signal was set while the pass was still running."""


def error_for_status(status_code: int, body: str, operation: str) -> GiteaAPIError:
    """Map a failed response to a categorized error."""
    if status_code == 401:
        return AuthenticationFailed(
            f"authentication failed for {operation}: check your token", status_code, operation
        )
    if status_code == 403:
        return AccessDenied(
            f"access denied for {operation}: insufficient permissions", status_code, operation
        )
    if status_code == 404:
        return ResourceNotFound(
            f"resource not found for {operation}: check URL and resource exists",
            status_code,
            operation,
        )
    if status_code == 429:
        return RateLimited(
            f"rate limit exceeded for {operation}: please retry later", status_code, operation
        )
    if status_code == 500:
        return RemoteServerError(
            f"internal server error for {operation}: {body}", status_code, operation, body
        )
    return UnexpectedStatus(
        f"gitea API returned status {status_code} for {operation}: {body}",
        status_code,
        operation,
        body,
    )


@dataclass
class QueuedJob:
    """A workflow job as returned by the Gitea jobs endpoints."""

    id: int
    status: str = ""
    name: str = ""
    labels: list = field(default_factory=list)
    run_id: int | None = None
    runner_id: int | None = None
    runner_name: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "QueuedJob":
        if not isinstance(data, dict) or data.get("id") is None:
            raise DecodeError(f"job entry without an id: {data!r}")
        return cls(
            id=data["id"],
            status=data.get("status") or "",
            name=data.get("name") or "",
            labels=list(data.get("labels") or []),
            run_id=data.get("run_id"),
            runner_id=data.get("runner_id"),
            runner_name=data.get("runner_name") or "",
        )


@dataclass
class Repository:
    owner: str
    name: str
    full_name: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "Repository":
        if not isinstance(data, dict):
            raise DecodeError(f"unexpected repository entry: {data!r}")
        owner = (data.get("owner") or {}).get("login", "")
        name = data.get("name", "")
        full_name = data.get("full_name", "")
        if (not owner or not name) and "/" in full_name:
            owner, name = full_name.split("/", 1)
        if not owner or not name:
            raise DecodeError(f"repository entry without owner/name: {data!r}")
        return cls(owner=owner, name=name, full_name=full_name or f"{owner}/{name}")


class GiteaClient:
    """Queries one Gitea instance with one API token."""

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = DEFAULT_TIMEOUT,
        page_size: int = DEFAULT_PAGE_SIZE,
        matcher: LabelMatcher | None = None,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.page_size = page_size
        self.matcher = matcher or SchemaLabelMatcher()
        self.session = session or requests.Session()
        self.headers = {
            "Authorization": f"token {token}",
            "Accept": "application/json",
        }

    def fetch_queued_jobs(
        self,
        scope: str,
        org: str = "",
        user: str = "",
        repo: str = "",
        labels: list[str] | None = None,
        cancel: threading.Event | None = None,
    ) -> list[QueuedJob]:
        """Return every pending job in the scope that the given labels can run.

        Either the complete list is returned or an exception is raised; a
        failure part way through never yields a partial result.
        """
        labels = list(labels or [])
        scope = getattr(scope, "value", scope)

        if scope == "repo":
            endpoints = [self.repo_jobs_url(org, repo)]
        elif scope == "org":
            endpoints = [f"{self.base_url}/api/v1/orgs/{org}/actions/jobs"]
        elif scope == "global":
            endpoints = [f"{self.base_url}/api/v1/admin/actions/jobs"]
        elif scope == "user":
            repos = self.fetch_user_repos(user, cancel=cancel)
            log.debug(f"User {user} owns {len(repos)} repositories")
            endpoints = [self.repo_jobs_url(r.owner, r.name) for r in repos]
        else:
            raise ValueError(f"unknown scope: {scope}")

        jobs = []
        for endpoint in endpoints:
            jobs.extend(self.fetch_jobs(endpoint, labels, cancel=cancel))
        return jobs

    def repo_jobs_url(self, owner: str, repo: str) -> str:
        return f"{self.base_url}/api/v1/repos/{owner}/{repo}/actions/jobs"

    def fetch_jobs(
        self, endpoint: str, labels: list[str], cancel: threading.Event | None = None
    ) -> list[QueuedJob]:
        """Page through each pending status of a jobs endpoint, keeping matching jobs."""
        matched = []
        for status in PENDING_STATUSES:
            page = 1
            while True:
                data = self._get(
                    endpoint,
                    {"status": status, "page": page, "limit": self.page_size},
                    "fetch workflow jobs",
                    cancel,
                )
                if not isinstance(data, dict):
                    raise DecodeError(f"unexpected jobs response from {endpoint}: {data!r}")
                page_jobs = [QueuedJob.from_dict(item) for item in data.get("jobs") or []]

                for job in page_jobs:
                    match = self.matcher.matches(job.labels, labels)
                    log.debug(
                        f"Job {job.id} (status={job.status}, labels={job.labels}) "
                        f"runnable with {labels}: {match}"
                    )
                    if match:
                        matched.append(job)

                if len(page_jobs) < self.page_size:
                    break
                page += 1
        return matched

    def fetch_user_repos(
        self, user: str, cancel: threading.Event | None = None
    ) -> list[Repository]:
        """List every repository owned by a user."""
        endpoint = f"{self.base_url}/api/v1/users/{user}/repos"
        repos = []
        page = 1
        while True:
            data = self._get(
                endpoint, {"page": page, "limit": self.page_size}, "fetch user repos", cancel
            )
            if not isinstance(data, list):
                raise DecodeError(f"unexpected repositories response from {endpoint}: {data!r}")
            repos.extend(Repository.from_dict(item) for item in data)
            if len(data) < self.page_size:
                break
            page += 1
        return repos

    def _get(self, url: str, params: dict, operation: str, cancel: threading.Event | None):
        if cancel is not None and cancel.is_set():
            raise PassCancelled(f"cancelled before {operation}")

        log.debug(f"GET {url} {params}")
        try:
            resp = self.session.get(url, headers=self.headers, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransportError(f"{operation} failed: {e}") from e

        if resp.status_code != 200:
            raise error_for_status(resp.status_code, resp.text, operation)

        try:
            return resp.json()
        except ValueError as e:
            raise DecodeError(f"{operation}: invalid JSON response: {e}") from e
