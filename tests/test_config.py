from __future__ import annotations

import textwrap
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from chatgate.config import PolicySeed, Settings, load_policy_seed
from chatgate.database import DEFAULT_BUSY_TIMEOUT, PolicyMalformed
from chatgate.security import TokenAuth
from chatgate.service import create_app


def _write(path: Path, content: str) -> Path:
    path.write_text(textwrap.dedent(content), encoding="utf-8")
    return path


def test_settings_from_environment(tmp_path: Path) -> None:
    settings = Settings.from_env(
        {
            "CHATGATE_DB_PATH": str(tmp_path / "gate.sqlite3"),
            "CHATGATE_ADMIN_TOKENS": "one, two,,",
            "CHATGATE_TRUSTED_PROXIES": "10.0.0.1,10.0.0.2",
            "CHATGATE_BUSY_TIMEOUT": "2.5",
            "CHATGATE_POLICY_FILE": str(tmp_path / "policy.yaml"),
        }
    )

    assert settings.database_path == (tmp_path / "gate.sqlite3").resolve()
    assert settings.admin_tokens == ["one", "two"]
    assert settings.trusted_proxy_hosts() == ["10.0.0.1", "10.0.0.2"]
    assert settings.busy_timeout == 2.5
    assert settings.policy_file == (tmp_path / "policy.yaml").resolve()


def test_settings_defaults() -> None:
    settings = Settings.from_env({})

    assert settings.database_path.name == "chatgate.sqlite3"
    assert settings.busy_timeout == DEFAULT_BUSY_TIMEOUT
    assert settings.admin_tokens == []
    assert settings.trusted_proxy_hosts() == "*"
    assert settings.policy_seed() is None


@pytest.mark.parametrize("value", ["soon", "0", "-1"])
def test_invalid_busy_timeout(value: str) -> None:
    with pytest.raises(ValueError):
        Settings.from_env({"CHATGATE_BUSY_TIMEOUT": value})


def test_policy_seed_under_policy_key(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "policy.yaml",
        """
        policy:
          max_users: 3
          allow_list:
            - Owner@Example.com
          block_list: [spam@example.com]
        """,
    )

    seed = load_policy_seed(path)

    assert seed == PolicySeed(max_users=3, allow_list=["owner@example.com"], block_list=["spam@example.com"])
    assert seed.to_policy().allow_list == ("owner@example.com",)


def test_policy_seed_at_top_level_with_defaults(tmp_path: Path) -> None:
    seed = load_policy_seed(_write(tmp_path / "policy.yaml", "allow_list: [a@example.com]\n"))

    assert seed.max_users == 10
    assert seed.block_list == []


@pytest.mark.parametrize(
    "content",
    [
        "max_users: 0\n",
        "maximum: 5\n",
        "- just\n- a list\n",
        "allow_list: not-a-list\n",
        "policy: [1, 2]\n",
        "max_users: [unclosed\n",
    ],
)
def test_malformed_policy_files(tmp_path: Path, content: str) -> None:
    with pytest.raises(PolicyMalformed):
        load_policy_seed(_write(tmp_path / "policy.yaml", content))


def test_application_seeds_policy_from_configured_file(tmp_path: Path) -> None:
    policy_file = _write(tmp_path / "policy.yaml", "max_users: 3\nblock_list: [spam@example.com]\n")
    settings = Settings(database_path=tmp_path / "gate.sqlite3", policy_file=policy_file)

    app = create_app(settings=settings, admin_auth=TokenAuth(["secret"]))

    with TestClient(app) as client:
        policy = client.get("/api/policy", headers={"Authorization": "Bearer secret"}).json()
        denied = client.post("/api/track-login", json={"email": "spam@example.com", "userId": "u1"})

    assert policy["maxUsers"] == 3
    assert policy["blockList"] == ["spam@example.com"]
    assert denied.status_code == 403
