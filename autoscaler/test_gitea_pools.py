#!/usr/bin/env python3
"""Tests for runner pool configuration."""

import json
import os
from unittest.mock import patch

import pytest

from gitea_pools import (
    RunnerPool,
    Scope,
    load_pools,
    load_pools_file,
    pool_from_dict,
    pool_from_env,
    validate_pools,
)

TOKENS = {"GITEA_AUTH_TOKEN": "auth", "GITEA_RUNNER_REGISTRATION_TOKEN": "reg"}


def make_pool(**overrides):
    values = {
        "name": "pool",
        "scope": Scope.ORG,
        "gitea_url": "https://gitea.example.com",
        "max_active_runners": 3,
        "org": "acme",
    }
    values.update(overrides)
    return RunnerPool(**values)


@pytest.fixture(autouse=True)
def tokens():
    with patch.dict(os.environ, TOKENS):
        yield


class TestValidate:
    """Tests for RunnerPool.validate."""

    def test_valid_org_pool(self):
        """A complete org pool has no errors."""
        assert make_pool().validate() == []

    @pytest.mark.parametrize(
        "overrides",
        [
            {"scope": Scope.GLOBAL, "org": ""},
            {"scope": Scope.USER, "org": "", "user": "alice"},
            {"scope": Scope.REPO, "org": "acme", "repo": "app"},
        ],
    )
    def test_valid_scopes(self, overrides):
        """Each scope accepts its required qualifiers."""
        assert make_pool(**overrides).validate() == []

    @pytest.mark.parametrize(
        "overrides,fragment",
        [
            ({"scope": Scope.ORG, "org": ""}, "'org' is required for org scope"),
            ({"scope": Scope.USER, "org": ""}, "'user' is required for user scope"),
            ({"scope": Scope.REPO, "repo": ""}, "'repo' is required for repo scope"),
            ({"scope": Scope.GLOBAL}, "'org' is not allowed for global scope"),
            ({"scope": Scope.ORG, "repo": "app"}, "'repo' is not allowed for org scope"),
            ({"scope": Scope.USER, "user": "alice"}, "'org' is not allowed for user scope"),
            ({"scope": Scope.REPO, "repo": "app", "user": "x"}, "'user' is not allowed for repo scope"),
        ],
    )
    def test_scope_qualifiers(self, overrides, fragment):
        """Required and forbidden qualifiers are enforced per scope."""
        errors = make_pool(**overrides).validate()
        assert any(fragment in e for e in errors), errors

    def test_unknown_scope(self):
        """An unknown scope is reported."""
        errors = make_pool(scope="planet").validate()
        assert any("unknown scope 'planet'" in e for e in errors)

    def test_bad_url_and_capacity(self):
        """URL must be http(s) and capacity at least 1."""
        errors = make_pool(gitea_url="gitea.local", max_active_runners=0).validate()
        assert any("gitea_url" in e for e in errors)
        assert any("max_active_runners" in e for e in errors)

    def test_missing_tokens(self):
        """Unset credential env vars are reported."""
        with patch.dict(os.environ, {}, clear=True):
            errors = make_pool().validate()
        assert any("GITEA_AUTH_TOKEN" in e for e in errors)
        assert any("GITEA_RUNNER_REGISTRATION_TOKEN" in e for e in errors)

    def test_duplicate_names(self):
        """Pool names must be unique."""
        errors = validate_pools([make_pool(), make_pool()])
        assert "duplicate pool name 'pool'" in errors

    def test_no_pools(self):
        """At least one pool is required."""
        assert validate_pools([]) == ["no runner pools configured"]


class TestLoading:
    """Tests for building pools from JSON and env."""

    def test_pool_from_dict(self):
        """Should read every field, accepting a comma separated label string."""
        pool = pool_from_dict(
            {
                "name": "p",
                "scope": "repo",
                "gitea_url": "https://g",
                "max_active_runners": "2",
                "labels": "linux, x64",
                "org": "o",
                "repo": "r",
                "auth_token_env": "MY_AUTH",
                "env": {"EXTRA": "1"},
            }
        )
        assert pool.scope == Scope.REPO
        assert pool.max_active_runners == 2
        assert pool.labels == ("linux", "x64")
        assert pool.auth_token_env == "MY_AUTH"
        assert pool.registration_token_env == "GITEA_RUNNER_REGISTRATION_TOKEN"
        assert pool.extra_env == {"EXTRA": "1"}

    def test_load_pools_file(self, tmp_path):
        """Should load a JSON list of pools."""
        path = tmp_path / "pools.json"
        path.write_text(
            json.dumps(
                [
                    {"name": "a", "scope": "global", "gitea_url": "https://g", "max_active_runners": 1},
                    {"name": "b", "scope": "org", "org": "acme", "gitea_url": "https://g", "max_active_runners": 4},
                ]
            )
        )
        pools = load_pools_file(str(path))
        assert [p.name for p in pools] == ["a", "b"]
        assert validate_pools(pools) == []

    def test_load_pools_file_with_pools_key(self, tmp_path):
        """An object with a 'pools' list is accepted too."""
        path = tmp_path / "pools.json"
        path.write_text(json.dumps({"pools": [{"name": "a", "scope": "global"}]}))
        assert [p.name for p in load_pools_file(str(path))] == ["a"]

    def test_load_pools_prefers_file(self, tmp_path):
        """RUNNER_POOLS_FILE wins over single-pool env vars."""
        path = tmp_path / "pools.json"
        path.write_text(json.dumps([{"name": "from-file", "scope": "global"}]))
        pools = load_pools({"RUNNER_POOLS_FILE": str(path), "POOL_NAME": "from-env"})
        assert [p.name for p in pools] == ["from-file"]

    def test_pool_from_env(self):
        """A single pool can be described with env vars."""
        pool = pool_from_env(
            {
                "POOL_NAME": "ci",
                "SCOPE": "user",
                "GITEA_USER": "alice",
                "GITEA_URL": "https://gitea.example.com",
                "MAX_ACTIVE_RUNNERS": "3",
                "LABELS": "linux",
            }
        )
        assert pool.name == "ci"
        assert pool.scope == Scope.USER
        assert pool.user == "alice"
        assert pool.labels == ("linux",)
        assert pool.auth_token_env == "GITEA_AUTH_TOKEN"
        assert pool.validate() == []

    def test_describe(self):
        """describe() names the queried scope."""
        assert make_pool(scope=Scope.REPO, repo="app").describe() == "repo acme/app"
        assert make_pool().describe() == "org acme"
        assert make_pool(scope=Scope.GLOBAL, org="").describe() == "global"


class TestMalformedPools:
    """Tests for pool entries with the wrong shape."""

    @pytest.mark.parametrize(
        "data,fragment",
        [
            ({"name": "a", "labels": 5}, "labels must be a list"),
            ({"name": "a", "labels": ["linux", 3]}, "labels must be a list"),
            ({"name": "a", "env": ["TZ=UTC"]}, "env must be an object"),
            ({"name": "a", "max_active_runners": "many"}, "max_active_runners must be an integer"),
            ({"name": "a", "max_active_runners": None}, "max_active_runners must be an integer"),
            ({"name": "a", "org": 7}, "org must be a string"),
            ({"name": ["a"]}, "name must be a string"),
        ],
    )
    def test_pool_from_dict_rejects_bad_fields(self, data, fragment):
        """Fields of the wrong type raise ValueError naming the field."""
        with pytest.raises(ValueError, match=fragment):
            pool_from_dict(data)

    def test_pool_from_dict_rejects_non_object(self):
        """A pool entry must be a JSON object."""
        with pytest.raises(ValueError, match="must be an object"):
            pool_from_dict("a")

    def test_env_values_become_strings(self):
        """Numeric env values are passed to the runner as strings."""
        pool = pool_from_dict({"name": "a", "env": {"RETRIES": 3}})
        assert pool.extra_env == {"RETRIES": "3"}

    @pytest.mark.parametrize(
        "content",
        [
            [{"name": "a", "labels": 5}],
            ["a"],
            {"pools": [1]},
            {"pools": "a"},
        ],
    )
    def test_load_pools_file_rejects_bad_entries(self, tmp_path, content):
        """A malformed pools file raises ValueError instead of crashing later."""
        path = tmp_path / "pools.json"
        path.write_text(json.dumps(content))
        with pytest.raises(ValueError):
            load_pools_file(str(path))

    def test_load_pools_file_rejects_invalid_json(self, tmp_path):
        """JSON syntax errors are ValueErrors too."""
        path = tmp_path / "pools.json"
        path.write_text("[{")
        with pytest.raises(ValueError):
            load_pools_file(str(path))
