"""Configuration for the admission gateway."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from .database import DEFAULT_BUSY_TIMEOUT, PolicyMalformed, resolve_database_path
from .models import DEFAULT_MAX_USERS, PolicyState
from .policy import normalize_email_list, parse_max_users


@dataclass(frozen=True)
class PolicySeed:
    """Initial policy written when the store has none yet."""

    max_users: int = DEFAULT_MAX_USERS
    allow_list: List[str] = field(default_factory=list)
    block_list: List[str] = field(default_factory=list)

    @staticmethod
    def from_dict(data: Dict[str, object]) -> "PolicySeed":
        """Create a :class:`PolicySeed` from raw dictionary data."""
        unknown = set(data) - {"max_users", "allow_list", "block_list"}
        if unknown:
            raise PolicyMalformed(f"Unknown policy fields: {', '.join(sorted(unknown))}")

        return PolicySeed(
            max_users=parse_max_users(data.get("max_users", DEFAULT_MAX_USERS)),
            allow_list=normalize_email_list(data.get("allow_list") or []),
            block_list=normalize_email_list(data.get("block_list") or []),
        )

    def to_policy(self) -> PolicyState:
        return PolicyState(
            max_users=self.max_users,
            allow_list=tuple(self.allow_list),
            block_list=tuple(self.block_list),
        )


def load_policy_seed(config_path: Path) -> PolicySeed:
    """Load a policy seed from a YAML file.

    The document may hold the fields at the top level or under a ``policy`` key.
    """
    with config_path.open("r", encoding="utf-8") as handle:
        try:
            raw = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise PolicyMalformed(f"Policy file {config_path} is not valid YAML: {exc}") from exc

    if not isinstance(raw, dict):
        raise PolicyMalformed("Policy file must contain a mapping")
    section = raw.get("policy", raw)
    if not isinstance(section, dict):
        raise PolicyMalformed("The 'policy' section must be a mapping")
    return PolicySeed.from_dict(section)


def _parse_timeout(value: Optional[str]) -> float:
    if value is None or not value.strip():
        return DEFAULT_BUSY_TIMEOUT
    try:
        timeout = float(value)
    except ValueError as exc:
        raise ValueError(f"CHATGATE_BUSY_TIMEOUT must be a number of seconds, got {value!r}") from exc
    if timeout <= 0:
        raise ValueError("CHATGATE_BUSY_TIMEOUT must be greater than zero")
    return timeout


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    """Runtime settings resolved from ``CHATGATE_*`` environment variables."""

    database_path: Path
    busy_timeout: float = DEFAULT_BUSY_TIMEOUT
    admin_tokens: List[str] = field(default_factory=list)
    trusted_proxies: List[str] = field(default_factory=list)
    policy_file: Optional[Path] = None

    @staticmethod
    def from_env(environ: Optional[Dict[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        policy_file = env.get("CHATGATE_POLICY_FILE")
        return Settings(
            database_path=resolve_database_path(env.get("CHATGATE_DB_PATH")),
            busy_timeout=_parse_timeout(env.get("CHATGATE_BUSY_TIMEOUT")),
            admin_tokens=_split_csv(env.get("CHATGATE_ADMIN_TOKENS")),
            trusted_proxies=_split_csv(env.get("CHATGATE_TRUSTED_PROXIES")),
            policy_file=Path(policy_file).expanduser().resolve(strict=False) if policy_file else None,
        )

    def trusted_proxy_hosts(self) -> List[str] | str:
        return self.trusted_proxies or "*"

    def policy_seed(self) -> Optional[PolicySeed]:
        if self.policy_file is None:
            return None
        return load_policy_seed(self.policy_file)


__all__ = ["PolicySeed", "Settings", "load_policy_seed"]
