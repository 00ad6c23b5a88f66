from __future__ import annotations

from datetime import datetime, timezone

import pytest

from chatgate.admission import (
    Decision,
    DenyReason,
    InvalidRequest,
    build_attempt,
    decide,
    parse_timestamp,
)
from chatgate.models import LoginAttempt, PolicyState


def _attempt(email: str) -> LoginAttempt:
    return LoginAttempt(
        email=email,
        user_id=f"auth0|{email.split('@')[0]}",
        timestamp=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    )


def _run(policy: PolicyState, emails: list[str], admitted: set[str] | None = None) -> list[Decision]:
    identities = set() if admitted is None else admitted
    decisions = []
    for email in emails:
        decision = decide(_attempt(email), policy, identities)
        if decision.admitted:
            identities.add(email)
        decisions.append(decision)
    return decisions


def test_ceiling_of_two_admits_first_two_distinct_users() -> None:
    decisions = _run(PolicyState(max_users=2), ["a@x.com", "b@x.com", "c@x.com"])

    assert [d.admitted for d in decisions] == [True, True, False]
    assert decisions[2].reason is DenyReason.QUOTA_EXCEEDED
    assert decisions[2].max_users == 2


@pytest.mark.parametrize("ceiling", [1, 2, 3, 7])
def test_at_most_ceiling_distinct_identities_are_admitted(ceiling: int) -> None:
    emails = [f"user{index}@example.com" for index in range(ceiling + 4)]
    decisions = _run(PolicyState(max_users=ceiling), emails)

    assert sum(d.admitted for d in decisions) == ceiling
    first_denied = decisions[ceiling]
    assert first_denied.reason is DenyReason.QUOTA_EXCEEDED
    assert first_denied.max_users == ceiling


def test_block_list_denies_even_with_free_slots() -> None:
    policy = PolicyState(max_users=1, block_list=("a@x.com",))

    decision = decide(_attempt("a@x.com"), policy, set())

    assert not decision.admitted
    assert decision.reason is DenyReason.BLOCKED
    assert decision.max_users is None


def test_block_list_wins_over_allow_list_and_prior_admission() -> None:
    policy = PolicyState(max_users=5, allow_list=("a@x.com",), block_list=("a@x.com",))

    decision = decide(_attempt("a@x.com"), policy, {"a@x.com"})

    assert decision.reason is DenyReason.BLOCKED


def test_repeat_login_is_admitted_after_ceiling_is_lowered() -> None:
    policy = PolicyState(max_users=1)
    identities = {"a@x.com", "b@x.com", "c@x.com"}

    decision = decide(_attempt("b@x.com"), policy, identities)

    assert decision.admitted
    assert decision.already_counted
    assert not decision.consumes_slot


def test_allow_listed_user_bypasses_full_ceiling() -> None:
    policy = PolicyState(max_users=2, allow_list=("vip@x.com",))

    decision = decide(_attempt("vip@x.com"), policy, {"a@x.com", "b@x.com"})

    assert decision.admitted
    assert decision.allow_listed
    assert decision.consumes_slot


def test_denial_message_names_the_ceiling() -> None:
    decision = Decision.deny(DenyReason.QUOTA_EXCEEDED, max_users=10)

    assert "User limit reached (10)" in decision.message


def test_build_attempt_normalises_email_and_accepts_when_alias() -> None:
    attempt = build_attempt(
        {"email": "  Alice@Example.COM ", "userId": "auth0|123", "when": "2024-05-01T10:00:00Z"},
        location=" 198.51.100.4 ",
    )

    assert attempt.email == "alice@example.com"
    assert attempt.user_id == "auth0|123"
    assert attempt.timestamp == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert attempt.location == "198.51.100.4"


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"email": "a@x.com"},
        {"userId": "auth0|1"},
        {"email": "", "userId": "auth0|1"},
        {"email": "a@x.com", "userId": "   "},
        {"email": ["a@x.com"], "userId": "auth0|1"},
    ],
)
def test_build_attempt_rejects_missing_identity(payload: dict) -> None:
    with pytest.raises(InvalidRequest):
        build_attempt(payload)


def test_build_attempt_defaults_timestamp_to_now() -> None:
    before = datetime.now(timezone.utc)
    attempt = build_attempt({"email": "a@x.com", "userId": 42})

    assert attempt.user_id == "42"
    assert attempt.timestamp >= before
    assert attempt.timestamp.tzinfo is not None


def test_parse_timestamp_understands_epoch_milliseconds() -> None:
    assert parse_timestamp(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert parse_timestamp(1_700_000_000_000) == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)


def test_parse_timestamp_treats_naive_values_as_utc() -> None:
    parsed = parse_timestamp("2024-05-01T10:00:00")

    assert parsed.tzinfo is not None
    assert parsed.utcoffset().total_seconds() == 0


@pytest.mark.parametrize("value", ["yesterday", True, {"at": 1}])
def test_parse_timestamp_rejects_garbage(value: object) -> None:
    with pytest.raises(InvalidRequest):
        parse_timestamp(value)
