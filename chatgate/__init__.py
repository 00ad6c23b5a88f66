"""Login admission control for the shared chat assistant."""

from __future__ import annotations

from typing import Any

from .admission import Decision, DenyReason, InvalidRequest, decide
from .database import Database, PolicyConflict, PolicyMalformed, StorageUnavailable, resolve_database_path
from .models import LoginAttempt, LoginEvent, PolicyState


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the gateway HTTP application."""

    from .service import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "Database",
    "Decision",
    "DenyReason",
    "InvalidRequest",
    "LoginAttempt",
    "LoginEvent",
    "PolicyConflict",
    "PolicyMalformed",
    "PolicyState",
    "StorageUnavailable",
    "create_app",
    "decide",
    "resolve_database_path",
]
