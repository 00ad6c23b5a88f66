"""SQLite-backed persistence for login events and the admission policy."""
from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager, suppress
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Tuple

from .admission import Decision, IdentitySet, decide as default_decide
from .models import DEFAULT_MAX_USERS, LoginAttempt, LoginEvent, PolicyState

DEFAULT_BUSY_TIMEOUT = 5.0

_KEY_MAX_USERS = "maxUsers"
_KEY_ALLOW_LIST = "allowList"
_KEY_BLOCK_LIST = "blockList"
_KEY_REVISION = "revision"
_POLICY_KEYS = (_KEY_MAX_USERS, _KEY_ALLOW_LIST, _KEY_BLOCK_LIST, _KEY_REVISION)


class StorageUnavailable(RuntimeError):
    """Raised when the backing store cannot be reached or timed out."""


class PolicyMalformed(ValueError):
    """Raised when an administrative policy value is rejected."""


class PolicyConflict(RuntimeError):
    """Raised when a policy write carries a stale revision."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Policy was modified concurrently (expected revision {expected}, found {actual})"
        )
        self.expected = expected
        self.actual = actual


DecideFn = Callable[[LoginAttempt, PolicyState, IdentitySet], Decision]


class IdentitySnapshot:
    """Distinct-identity count and membership for one email, read together."""

    __slots__ = ("_count", "_known")

    def __init__(self, count: int, known: Iterable[str] = ()) -> None:
        self._count = count
        self._known = frozenset(known)

    def __len__(self) -> int:
        return self._count

    def __contains__(self, email: object) -> bool:
        return email in self._known


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the gateway database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "chatgate.sqlite3").resolve(strict=False)


def _serialize_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _rollback(conn: sqlite3.Connection) -> None:
    with suppress(sqlite3.Error):
        conn.execute("ROLLBACK")


class Database:
    """Simple wrapper around SQLite for the record and policy stores.

    Every public method opens its own connection, so one instance may be shared
    between threads. Writes that depend on what they read run inside
    ``BEGIN IMMEDIATE`` transactions, which SQLite serializes across every
    connection and process using the same file.
    """

    def __init__(
        self,
        path: Path,
        *,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT,
        seed: Optional[PolicyState] = None,
    ) -> None:
        _ensure_directory(path)
        self._path = path
        self._busy_timeout = busy_timeout
        self._seed = seed or PolicyState()

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self, *, write: bool = False) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Unable to open the login database: {exc}") from exc

        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            _rollback(conn)
            raise StorageUnavailable(f"Login database is unavailable: {exc}") from exc
        except BaseException:
            _rollback(conn)
            raise
        finally:
            conn.close()

    def initialize(self, seed: Optional[PolicyState] = None) -> None:
        """Create the required tables and the default policy if missing."""

        if seed is not None:
            self._seed = seed

        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Unable to open the login database: {exc}") from exc
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS login_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    email TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    location TEXT
                );

                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_login_events_email ON login_events(email);
                CREATE INDEX IF NOT EXISTS idx_login_events_user_id ON login_events(user_id);
                CREATE INDEX IF NOT EXISTS idx_login_events_timestamp ON login_events(timestamp);
                """
            )
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"Failed to initialise the login database: {exc}") from exc
        finally:
            conn.close()

        with self._transaction(write=True) as conn:
            self._insert_policy_defaults(conn)

    # ------------------------------------------------------------------
    # Policy store
    # ------------------------------------------------------------------
    def get_policy(self) -> PolicyState:
        """Return the current policy, writing defaults on first read."""

        with self._transaction() as conn:
            policy = self._load_policy(conn)
        if policy is not None:
            return policy

        with self._transaction(write=True) as conn:
            self._insert_policy_defaults(conn)
            policy = self._load_policy(conn)
        if policy is None:  # pragma: no cover - defaults were just written
            raise StorageUnavailable("Policy could not be initialised")
        return policy

    def set_max_users(self, max_users: int, *, expected_revision: Optional[int] = None) -> PolicyState:
        if isinstance(max_users, bool) or not isinstance(max_users, int) or max_users < 1:
            raise PolicyMalformed("Field 'max' must be a positive integer")
        return self._write_policy({_KEY_MAX_USERS: max_users}, expected_revision)

    def set_allow_list(
        self, emails: Iterable[str], *, expected_revision: Optional[int] = None
    ) -> PolicyState:
        return self._write_policy({_KEY_ALLOW_LIST: list(emails)}, expected_revision)

    def set_block_list(
        self, emails: Iterable[str], *, expected_revision: Optional[int] = None
    ) -> PolicyState:
        return self._write_policy({_KEY_BLOCK_LIST: list(emails)}, expected_revision)

    def replace_policy(
        self, policy: PolicyState, *, expected_revision: Optional[int] = None
    ) -> PolicyState:
        """Overwrite the ceiling and both lists in a single write."""

        if policy.max_users < 1:
            raise PolicyMalformed("Field 'max' must be a positive integer")
        return self._write_policy(
            {
                _KEY_MAX_USERS: policy.max_users,
                _KEY_ALLOW_LIST: list(policy.allow_list),
                _KEY_BLOCK_LIST: list(policy.block_list),
            },
            expected_revision,
        )

    def _write_policy(self, values: dict, expected_revision: Optional[int]) -> PolicyState:
        with self._transaction(write=True) as conn:
            self._insert_policy_defaults(conn)
            current = self._load_policy(conn)
            if current is None:  # pragma: no cover - defaults were just written
                raise StorageUnavailable("Policy could not be initialised")
            if expected_revision is not None and expected_revision != current.revision:
                raise PolicyConflict(expected_revision, current.revision)

            values = dict(values)
            values[_KEY_REVISION] = current.revision + 1
            conn.executemany(
                "INSERT INTO settings (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                [(key, json.dumps(value)) for key, value in values.items()],
            )
            updated = self._load_policy(conn)
        if updated is None:  # pragma: no cover - rows were just written
            raise StorageUnavailable("Policy could not be reloaded")
        return updated

    # ------------------------------------------------------------------
    # Record store
    # ------------------------------------------------------------------
    def count_distinct_identities(self) -> int:
        with self._transaction() as conn:
            return self._count_identities(conn)

    def identity_is_known(self, email: str) -> bool:
        with self._transaction() as conn:
            return self._email_is_known(conn, email)

    def identity_snapshot(self, email: str) -> IdentitySnapshot:
        """Return the distinct count and membership of ``email`` from one read."""

        with self._transaction() as conn:
            return self._identity_snapshot(conn, email)

    def append_login_event(self, attempt: LoginAttempt) -> LoginEvent:
        with self._transaction(write=True) as conn:
            return self._insert_event(conn, attempt)

    def admit(
        self,
        attempt: LoginAttempt,
        decide: DecideFn = default_decide,
        *,
        record_repeat: bool = True,
    ) -> Tuple[Decision, Optional[LoginEvent]]:
        """Evaluate and record ``attempt`` as a single atomic unit.

        The policy read, the identity snapshot, the decision and the insert all
        happen while holding SQLite's write lock, so concurrent first-time
        logins near the ceiling are decided one after another.
        """

        with self._transaction(write=True) as conn:
            policy = self._load_policy(conn)
            if policy is None:
                self._insert_policy_defaults(conn)
                policy = self._load_policy(conn)
            if policy is None:  # pragma: no cover - defaults were just written
                raise StorageUnavailable("Policy could not be initialised")

            snapshot = self._identity_snapshot(conn, attempt.email)
            decision = decide(attempt, policy, snapshot)
            event: Optional[LoginEvent] = None
            if decision.admitted and (decision.consumes_slot or record_repeat):
                event = self._insert_event(conn, attempt)
        return decision, event

    def list_login_events(self, limit: Optional[int] = None) -> List[LoginEvent]:
        """Return login events, newest first."""

        query = "SELECT * FROM login_events ORDER BY timestamp DESC, id DESC"
        params: Tuple[object, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (int(limit),)
        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_event(row) for row in rows]

    def remove_login_events(self, identity: str) -> int:
        """Delete every event recorded for an email or user id."""

        value = identity.strip()
        if not value:
            raise ValueError("Identity must not be empty")
        with self._transaction(write=True) as conn:
            cursor = conn.execute(
                "DELETE FROM login_events WHERE email = ? OR user_id = ?",
                (value.lower(), value),
            )
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _insert_policy_defaults(self, conn: sqlite3.Connection) -> None:
        defaults = {
            _KEY_MAX_USERS: self._seed.max_users,
            _KEY_ALLOW_LIST: list(self._seed.allow_list),
            _KEY_BLOCK_LIST: list(self._seed.block_list),
            _KEY_REVISION: 0,
        }
        conn.executemany(
            "INSERT OR IGNORE INTO settings (key, value) VALUES (?, ?)",
            [(key, json.dumps(value)) for key, value in defaults.items()],
        )

    def _load_policy(self, conn: sqlite3.Connection) -> Optional[PolicyState]:
        placeholders = ", ".join("?" for _ in _POLICY_KEYS)
        rows = conn.execute(
            f"SELECT key, value FROM settings WHERE key IN ({placeholders})",
            _POLICY_KEYS,
        ).fetchall()
        stored = {row["key"]: row["value"] for row in rows}
        if any(key not in stored for key in _POLICY_KEYS):
            return None

        try:
            max_users = json.loads(stored[_KEY_MAX_USERS])
            allow_list = json.loads(stored[_KEY_ALLOW_LIST])
            block_list = json.loads(stored[_KEY_BLOCK_LIST])
            revision = json.loads(stored[_KEY_REVISION])
        except ValueError as exc:
            raise StorageUnavailable("Stored policy could not be decoded") from exc

        if not isinstance(max_users, int) or max_users < 1:
            max_users = DEFAULT_MAX_USERS
        return PolicyState(
            max_users=max_users,
            allow_list=tuple(str(item) for item in allow_list or ()),
            block_list=tuple(str(item) for item in block_list or ()),
            revision=int(revision),
        )

    def _count_identities(self, conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT COUNT(DISTINCT email) AS total FROM login_events").fetchone()
        return int(row["total"])

    def _email_is_known(self, conn: sqlite3.Connection, email: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM login_events WHERE email = ? LIMIT 1",
            (email.strip().lower(),),
        ).fetchone()
        return row is not None

    def _identity_snapshot(self, conn: sqlite3.Connection, email: str) -> IdentitySnapshot:
        email = email.strip().lower()
        count = self._count_identities(conn)
        known = (email,) if self._email_is_known(conn, email) else ()
        return IdentitySnapshot(count, known)

    def _insert_event(self, conn: sqlite3.Connection, attempt: LoginAttempt) -> LoginEvent:
        timestamp = _serialize_datetime(attempt.timestamp)
        cursor = conn.execute(
            """
            INSERT INTO login_events (user_id, email, timestamp, location)
            VALUES (?, ?, ?, ?)
            """,
            (attempt.user_id, attempt.email, timestamp, attempt.location),
        )
        return LoginEvent(
            id=int(cursor.lastrowid),
            user_id=attempt.user_id,
            email=attempt.email,
            timestamp=_parse_datetime(timestamp),
            location=attempt.location,
        )

    def _row_to_event(self, row: sqlite3.Row) -> LoginEvent:
        return LoginEvent(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            email=str(row["email"]),
            timestamp=_parse_datetime(str(row["timestamp"])),
            location=row["location"],
        )


__all__ = [
    "DEFAULT_BUSY_TIMEOUT",
    "Database",
    "IdentitySnapshot",
    "PolicyConflict",
    "PolicyMalformed",
    "StorageUnavailable",
    "resolve_database_path",
]
