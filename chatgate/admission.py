"""Pure admission decisions for login attempts.

Nothing in this module touches storage. :func:`decide` receives the current
policy and the set of already admitted identities and returns a
:class:`Decision`; callers are responsible for evaluating it against a
consistent snapshot and persisting the outcome.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Mapping, Optional, Protocol

from .models import LoginAttempt, PolicyState

_MAX_EMAIL_LENGTH = 320
_MAX_USER_ID_LENGTH = 255
_MAX_LOCATION_LENGTH = 255


class IdentitySet(Protocol):
    """Anything that can report the distinct-identity count and membership."""

    def __len__(self) -> int: ...

    def __contains__(self, email: object) -> bool: ...


class InvalidRequest(ValueError):
    """Raised when a login attempt is missing or has malformed fields."""


class DenyReason(str, Enum):
    """Why an attempt was refused."""

    BLOCKED = "blocked"
    QUOTA_EXCEEDED = "quota_exceeded"


@dataclass(frozen=True)
class Decision:
    """Outcome of evaluating a single attempt against the policy."""

    admitted: bool
    reason: Optional[DenyReason] = None
    max_users: Optional[int] = None
    already_counted: bool = False
    allow_listed: bool = False

    @classmethod
    def admit(cls, *, already_counted: bool = False, allow_listed: bool = False) -> "Decision":
        return cls(admitted=True, already_counted=already_counted, allow_listed=allow_listed)

    @classmethod
    def deny(cls, reason: DenyReason, *, max_users: Optional[int] = None) -> "Decision":
        return cls(admitted=False, reason=reason, max_users=max_users)

    @property
    def consumes_slot(self) -> bool:
        """``True`` when admitting this attempt adds a new distinct identity."""

        return self.admitted and not self.already_counted

    @property
    def message(self) -> str:
        if self.admitted:
            return "Login admitted."
        if self.reason is DenyReason.BLOCKED:
            return "Access for this account has been revoked."
        return f"User limit reached ({self.max_users}). No new logins allowed."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(value: object) -> str:
    """Return the canonical (stripped, lower-cased) form of ``value``."""

    if not isinstance(value, str):
        raise InvalidRequest("email must be a string")
    normalized = value.strip().lower()
    if not normalized:
        raise InvalidRequest("email must not be empty")
    if len(normalized) > _MAX_EMAIL_LENGTH:
        raise InvalidRequest("email is too long")
    return normalized


def _normalize_user_id(value: object) -> str:
    if isinstance(value, bool) or value is None:
        raise InvalidRequest("userId must not be empty")
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str):
        raise InvalidRequest("userId must be a string")
    normalized = value.strip()
    if not normalized:
        raise InvalidRequest("userId must not be empty")
    if len(normalized) > _MAX_USER_ID_LENGTH:
        raise InvalidRequest("userId is too long")
    return normalized


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: object) -> datetime:
    """Parse a caller supplied timestamp.

    ISO 8601 strings (a trailing ``Z`` is accepted) and numeric epoch values in
    milliseconds are understood. ``None`` means "now".
    """

    if value is None or value == "":
        return _utcnow()
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, bool):
        raise InvalidRequest("timestamp must be an ISO 8601 string or epoch milliseconds")
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise InvalidRequest("timestamp is out of range") from exc
    if isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            return _as_utc(datetime.fromisoformat(text))
        except ValueError as exc:
            raise InvalidRequest(f"timestamp {value!r} is not a valid ISO 8601 value") from exc
    raise InvalidRequest("timestamp must be an ISO 8601 string or epoch milliseconds")


def build_attempt(payload: Mapping[str, object], *, location: Optional[str] = None) -> LoginAttempt:
    """Validate a raw request body into a :class:`LoginAttempt`.

    ``when`` is accepted as an alias of ``timestamp`` for older front-ends.
    """

    email = payload.get("email")
    user_id = payload.get("userId")
    if email is None or email == "" or user_id is None or user_id == "":
        raise InvalidRequest("Missing userId or email in request body")

    raw_timestamp = payload.get("timestamp")
    if raw_timestamp is None:
        raw_timestamp = payload.get("when")

    if location is not None:
        location = location.strip()[:_MAX_LOCATION_LENGTH] or None

    return LoginAttempt(
        email=normalize_email(email),
        user_id=_normalize_user_id(user_id),
        timestamp=parse_timestamp(raw_timestamp),
        location=location,
    )


def decide(attempt: LoginAttempt, policy: PolicyState, current_identities: IdentitySet) -> Decision:
    """Return the admission decision for ``attempt``.

    Rules are evaluated in order and the first match wins: block-list, repeat
    login, allow-list, ceiling, admit.
    """

    email = attempt.email
    if policy.is_block_listed(email):
        return Decision.deny(DenyReason.BLOCKED)
    if email in current_identities:
        return Decision.admit(already_counted=True)
    if policy.is_allow_listed(email):
        return Decision.admit(allow_listed=True)
    if len(current_identities) >= policy.max_users:
        return Decision.deny(DenyReason.QUOTA_EXCEEDED, max_users=policy.max_users)
    return Decision.admit()


__all__ = [
    "Decision",
    "DenyReason",
    "IdentitySet",
    "InvalidRequest",
    "build_attempt",
    "decide",
    "normalize_email",
    "parse_timestamp",
]
