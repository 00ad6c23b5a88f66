"""Orchestration of a single login attempt from request to stored event."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from typing import Mapping, Optional

import anyio.to_thread

from .admission import Decision, DenyReason, build_attempt
from .database import Database, StorageUnavailable
from .models import LoginEvent

logger = logging.getLogger("chatgate.gateway")


@dataclass(frozen=True)
class AdmissionResult:
    """What the gateway reports back to the chat front-end."""

    decision: Decision
    event: Optional[LoginEvent] = None

    @property
    def admitted(self) -> bool:
        return self.decision.admitted

    def to_payload(self) -> dict:
        if self.decision.admitted:
            return {"admitted": True, "success": True}
        payload: dict = {
            "admitted": False,
            "reason": self.decision.reason.value if self.decision.reason else None,
            "error": self.decision.message,
        }
        if self.decision.reason is DenyReason.QUOTA_EXCEEDED:
            payload["maxUsers"] = self.decision.max_users
        return payload


class AdmissionGateway:
    """Validate, decide and record login attempts against a :class:`Database`.

    The gateway keeps no state of its own between attempts. A failed or
    timed-out store call raises :class:`StorageUnavailable` and nothing is
    admitted; the caller retries the whole attempt.
    """

    def __init__(self, database: Database, *, record_repeat_logins: bool = True) -> None:
        self._database = database
        self._record_repeat_logins = record_repeat_logins

    @property
    def database(self) -> Database:
        return self._database

    def evaluate(self, payload: Mapping[str, object], *, location: Optional[str] = None) -> AdmissionResult:
        """Run one attempt synchronously. Raises ``InvalidRequest`` on bad input."""

        attempt = build_attempt(payload, location=location)
        try:
            decision, event = self._database.admit(
                attempt, record_repeat=self._record_repeat_logins
            )
        except StorageUnavailable:
            logger.exception("Login attempt for %s could not be evaluated", attempt.email)
            raise

        if decision.admitted:
            logger.info(
                "Admitted %s (user %s) from %s%s",
                attempt.email,
                attempt.user_id,
                attempt.location or "unknown location",
                " [repeat]" if decision.already_counted else "",
            )
        else:
            logger.warning(
                "Denied %s (user %s): %s",
                attempt.email,
                attempt.user_id,
                decision.reason.value if decision.reason else "unknown",
            )
        return AdmissionResult(decision=decision, event=event)

    async def attempt_login(
        self, payload: Mapping[str, object], *, location: Optional[str] = None
    ) -> AdmissionResult:
        """Async wrapper that keeps the blocking store work off the event loop."""

        return await anyio.to_thread.run_sync(partial(self.evaluate, payload, location=location))


__all__ = ["AdmissionGateway", "AdmissionResult"]
