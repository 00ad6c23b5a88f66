"""Domain records shared by the admission gateway and its store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple

DEFAULT_MAX_USERS = 10


@dataclass(frozen=True)
class LoginAttempt:
    """A validated login attempt as received from the chat front-end."""

    email: str
    user_id: str
    timestamp: datetime
    location: Optional[str] = None


@dataclass(frozen=True)
class LoginEvent:
    """An admitted login attempt persisted in the record store."""

    id: int
    user_id: str
    email: str
    timestamp: datetime
    location: Optional[str]


@dataclass(frozen=True)
class PolicyState:
    """The singleton admission policy."""

    max_users: int = DEFAULT_MAX_USERS
    allow_list: Tuple[str, ...] = field(default_factory=tuple)
    block_list: Tuple[str, ...] = field(default_factory=tuple)
    revision: int = 0

    def is_allow_listed(self, email: str) -> bool:
        return email in self.allow_list

    def is_block_listed(self, email: str) -> bool:
        return email in self.block_list


__all__ = ["DEFAULT_MAX_USERS", "LoginAttempt", "LoginEvent", "PolicyState"]
