"""Runner pool definitions and their validation."""

import enum
import json
import logging
import os
from dataclasses import dataclass, field

log = logging.getLogger(__name__)


class Scope(str, enum.Enum):
    """Breadth of the Gitea job query for a pool."""

    GLOBAL = "global"
    ORG = "org"
    USER = "user"
    REPO = "repo"


# scope -> (required qualifiers, forbidden qualifiers)
SCOPE_QUALIFIERS = {
    Scope.GLOBAL: ((), ("org", "user", "repo")),
    Scope.ORG: (("org",), ("user", "repo")),
    Scope.USER: (("user",), ("org", "repo")),
    Scope.REPO: (("org", "repo"), ("user",)),
}


@dataclass(frozen=True)
class RunnerPool:
    """A group of ephemeral runners sharing a scope, labels and a capacity limit.

    For ``repo`` scope, ``org`` holds the repository owner (user or
    organization).
    """

    name: str
    scope: Scope
    gitea_url: str
    max_active_runners: int
    labels: tuple = ()
    org: str = ""
    user: str = ""
    repo: str = ""
    auth_token_env: str = "GITEA_AUTH_TOKEN"
    registration_token_env: str = "GITEA_RUNNER_REGISTRATION_TOKEN"
    extra_env: dict = field(default_factory=dict, hash=False, compare=False)

    @property
    def auth_token(self) -> str | None:
        return os.environ.get(self.auth_token_env)

    @property
    def registration_token(self) -> str | None:
        return os.environ.get(self.registration_token_env)

    def validate(self) -> list[str]:
        """Return a list of problems with this pool (empty when valid)."""
        errors = []
        prefix = f"pool '{self.name}'"

        if not self.name:
            errors.append("pool name must not be empty")

        try:
            scope = Scope(self.scope)
        except ValueError:
            errors.append(f"{prefix}: unknown scope '{self.scope}'")
            scope = None

        if scope is not None:
            required, forbidden = SCOPE_QUALIFIERS[scope]
            for qualifier in required:
                if not getattr(self, qualifier):
                    errors.append(f"{prefix}: '{qualifier}' is required for {scope.value} scope")
            for qualifier in forbidden:
                if getattr(self, qualifier):
                    errors.append(f"{prefix}: '{qualifier}' is not allowed for {scope.value} scope")

        if not self.gitea_url.startswith(("http://", "https://")):
            errors.append(f"{prefix}: gitea_url must be an http(s) URL, got '{self.gitea_url}'")
        if self.max_active_runners < 1:
            errors.append(f"{prefix}: max_active_runners must be >= 1")
        if not self.auth_token:
            errors.append(f"{prefix}: auth token env var {self.auth_token_env} is not set")
        if not self.registration_token:
            errors.append(
                f"{prefix}: registration token env var {self.registration_token_env} is not set"
            )

        return errors

    def describe(self) -> str:
        if self.scope == Scope.REPO:
            return f"repo {self.org}/{self.repo}"
        if self.scope == Scope.ORG:
            return f"org {self.org}"
        if self.scope == Scope.USER:
            return f"user {self.user}"
        return "global"


def pool_from_dict(data: dict) -> RunnerPool:
    """Build a RunnerPool from a JSON object.

    Raises ValueError when the object does not have the expected shape.
    """
    if not isinstance(data, dict):
        raise ValueError(f"pool entry must be an object, got {data!r}")

    labels = data.get("labels") or []
    if isinstance(labels, str):
        labels = [label.strip() for label in labels.split(",") if label.strip()]
    elif not isinstance(labels, list) or not all(isinstance(label, str) for label in labels):
        raise ValueError(f"pool '{data.get('name', '')}': labels must be a list of strings or a string")

    env = data.get("env") or {}
    if not isinstance(env, dict):
        raise ValueError(f"pool '{data.get('name', '')}': env must be an object")

    try:
        max_active = int(data.get("max_active_runners", 1))
    except (TypeError, ValueError):
        raise ValueError(
            f"pool '{data.get('name', '')}': max_active_runners must be an integer"
        ) from None

    kwargs = {
        "name": data.get("name", ""),
        "scope": _scope(data.get("scope", "")),
        "gitea_url": data.get("gitea_url", ""),
        "max_active_runners": max_active,
        "labels": tuple(labels),
        "org": data.get("org", "") or "",
        "user": data.get("user", "") or "",
        "repo": data.get("repo", "") or "",
        "extra_env": {str(k): str(v) for k, v in env.items()},
    }
    for key in ("name", "gitea_url", "org", "user", "repo"):
        if not isinstance(kwargs[key], str):
            raise ValueError(f"pool '{kwargs['name']}': {key} must be a string")
    if data.get("auth_token_env"):
        kwargs["auth_token_env"] = data["auth_token_env"]
    if data.get("registration_token_env"):
        kwargs["registration_token_env"] = data["registration_token_env"]
    return RunnerPool(**kwargs)


def _scope(value: str):
    try:
        return Scope(value)
    except ValueError:
        # Left as a plain string so validate() can report it.
        return value


def load_pools_file(path: str) -> list[RunnerPool]:
    """Load pool definitions from a JSON file holding a list of objects."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("pools", [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of pools")
    return [pool_from_dict(item) for item in data]


def pool_from_env(environ=None) -> RunnerPool:
    """Build a single pool from environment variables."""
    env = os.environ if environ is None else environ
    data = {
        "name": env.get("POOL_NAME", "runner"),
        "scope": env.get("SCOPE", ""),
        "gitea_url": env.get("GITEA_URL", ""),
        "max_active_runners": env.get("MAX_ACTIVE_RUNNERS", "1"),
        "labels": env.get("LABELS", ""),
        "org": env.get("ORG", ""),
        "user": env.get("GITEA_USER", ""),
        "repo": env.get("REPO", ""),
        "auth_token_env": env.get("AUTH_TOKEN_ENV", ""),
        "registration_token_env": env.get("REGISTRATION_TOKEN_ENV", ""),
    }
    return pool_from_dict(data)


def load_pools(environ=None) -> list[RunnerPool]:
    """Load pools from RUNNER_POOLS_FILE, or a single pool from the environment."""
    env = os.environ if environ is None else environ
    path = env.get("RUNNER_POOLS_FILE")
    if path:
        pools = load_pools_file(path)
        log.info(f"Loaded {len(pools)} pool(s) from {path}")
        return pools
    return [pool_from_env(env)]


def validate_pools(pools: list[RunnerPool]) -> list[str]:
    errors = []
    if not pools:
        errors.append("no runner pools configured")
    seen = set()
    for pool in pools:
        errors.extend(pool.validate())
        if pool.name in seen:
            errors.append(f"duplicate pool name '{pool.name}'")
        seen.add(pool.name)
    return errors
