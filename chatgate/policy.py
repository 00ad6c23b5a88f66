"""Operator-facing administration of the admission policy and login history."""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Sequence, Tuple

from .database import Database, PolicyMalformed
from .models import LoginEvent, PolicyState

logger = logging.getLogger("chatgate.policy")

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_MAX_EMAIL_LENGTH = 320
_MAX_LIST_ENTRIES = 10_000


def parse_max_users(value: object) -> int:
    """Coerce an operator supplied ceiling into a positive integer.

    Integral numbers and numeric strings are accepted; everything else,
    including booleans and zero, raises :class:`PolicyMalformed`.
    """

    if isinstance(value, bool) or value is None:
        raise PolicyMalformed("Field 'max' must be a positive integer")
    if isinstance(value, float):
        if not value.is_integer():
            raise PolicyMalformed("Field 'max' must be a positive integer")
        value = int(value)
    if isinstance(value, str):
        text = value.strip()
        if not (text.isascii() and text.isdigit()):
            raise PolicyMalformed("Field 'max' must be a positive integer")
        try:
            value = int(text)
        except ValueError as exc:
            raise PolicyMalformed("Field 'max' must be a positive integer") from exc
    if not isinstance(value, int) or value < 1:
        raise PolicyMalformed("Field 'max' must be a positive integer")
    return value


def normalize_email_list(values: object) -> List[str]:
    """Validate and normalise a full replacement list of email addresses."""

    if isinstance(values, (str, bytes)) or not isinstance(values, (list, tuple)):
        raise PolicyMalformed("Email list must be provided as a list of strings")
    if len(values) > _MAX_LIST_ENTRIES:
        raise PolicyMalformed(f"Email list must not exceed {_MAX_LIST_ENTRIES} entries")

    normalised: List[str] = []
    seen = set()
    for item in values:
        if not isinstance(item, str):
            raise PolicyMalformed("Email list must contain only strings")
        email = item.strip().lower()
        if len(email) > _MAX_EMAIL_LENGTH or not _EMAIL_PATTERN.match(email):
            raise PolicyMalformed(f"{item!r} is not a valid email address")
        if email in seen:
            continue
        normalised.append(email)
        seen.add(email)
    return normalised


class PolicyAdministrator:
    """CRUD over the ceiling, the allow-list, the block-list and login history.

    Every write validates its input before touching the store and replaces
    the whole value; callers compute the new list from the old one.
    """

    def __init__(self, database: Database) -> None:
        self._database = database

    def get_policy(self) -> PolicyState:
        return self._database.get_policy()

    def set_max_users(self, value: object, *, expected_revision: Optional[int] = None) -> PolicyState:
        max_users = parse_max_users(value)
        policy = self._database.set_max_users(max_users, expected_revision=expected_revision)
        logger.info("User ceiling set to %s (revision %s)", policy.max_users, policy.revision)
        return policy

    def set_allow_list(self, values: object, *, expected_revision: Optional[int] = None) -> PolicyState:
        emails = normalize_email_list(values)
        policy = self._database.set_allow_list(emails, expected_revision=expected_revision)
        logger.info("Allow-list replaced with %s entries (revision %s)", len(emails), policy.revision)
        return policy

    def set_block_list(self, values: object, *, expected_revision: Optional[int] = None) -> PolicyState:
        emails = normalize_email_list(values)
        policy = self._database.set_block_list(emails, expected_revision=expected_revision)
        logger.info("Block-list replaced with %s entries (revision %s)", len(emails), policy.revision)
        overlap = set(policy.allow_list) & set(emails)
        if overlap:
            logger.warning(
                "%s address(es) are on both lists; the block-list takes precedence", len(overlap)
            )
        return policy

    def replace_policy(
        self,
        *,
        max_users: object,
        allow_list: object,
        block_list: object,
        expected_revision: Optional[int] = None,
    ) -> PolicyState:
        candidate = PolicyState(
            max_users=parse_max_users(max_users),
            allow_list=tuple(normalize_email_list(allow_list)),
            block_list=tuple(normalize_email_list(block_list)),
        )
        policy = self._database.replace_policy(candidate, expected_revision=expected_revision)
        logger.info(
            "Policy replaced: ceiling=%s, %s allowed, %s blocked (revision %s)",
            policy.max_users,
            len(policy.allow_list),
            len(policy.block_list),
            policy.revision,
        )
        return policy

    def add_to_list(self, which: str, emails: Iterable[str]) -> PolicyState:
        """Append ``emails`` to the named list through a full replace."""

        current, revision = self._current_list(which)
        return self._replace_list(which, [*current, *emails], revision)

    def remove_from_list(self, which: str, emails: Iterable[str]) -> PolicyState:
        """Drop ``emails`` from the named list through a full replace."""

        dropped = {email.strip().lower() for email in emails}
        current, revision = self._current_list(which)
        return self._replace_list(
            which, [email for email in current if email not in dropped], revision
        )

    def list_login_events(self, limit: Optional[int] = None) -> List[LoginEvent]:
        return self._database.list_login_events(limit=limit)

    def purge_identity(self, identity: str) -> int:
        """Remove every login event recorded under ``identity`` (an email or a user id)."""

        if not isinstance(identity, str) or not identity.strip():
            raise PolicyMalformed("Identity must be a non-empty email address or user id")
        removed = self._database.remove_login_events(identity)
        logger.info("Purged %s login event(s) for %s", removed, identity.strip())
        return removed

    def _current_list(self, which: str) -> Tuple[Sequence[str], int]:
        policy = self._database.get_policy()
        if which == "allow":
            return policy.allow_list, policy.revision
        if which == "block":
            return policy.block_list, policy.revision
        raise ValueError(f"Unknown list {which!r}; expected 'allow' or 'block'")

    def _replace_list(self, which: str, values: List[str], revision: int) -> PolicyState:
        if which == "allow":
            return self.set_allow_list(values, expected_revision=revision)
        return self.set_block_list(values, expected_revision=revision)


__all__ = ["PolicyAdministrator", "normalize_email_list", "parse_max_users"]
