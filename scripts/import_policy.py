"""Replace the stored admission policy with the contents of a YAML file."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from chatgate.config import Settings, load_policy_seed
from chatgate.database import Database, PolicyMalformed, StorageUnavailable, resolve_database_path
from chatgate.policy import PolicyAdministrator


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Import an admission policy from YAML")
    parser.add_argument("policy_file", help="YAML file with max_users, allow_list and block_list")
    parser.add_argument(
        "--db-path",
        default=None,
        help="Override the database location (defaults to CHATGATE_DB_PATH or the repository data directory)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(list(argv) if argv is not None else None)

    policy_path = Path(args.policy_file).expanduser()
    try:
        seed = load_policy_seed(policy_path)
    except OSError as exc:
        print(f"Unable to read {policy_path}: {exc}", file=sys.stderr)
        return 1
    except PolicyMalformed as exc:
        print(f"Rejected {policy_path}: {exc}", file=sys.stderr)
        return 1

    try:
        settings = Settings.from_env()
    except ValueError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 1
    db_path = resolve_database_path(args.db_path) if args.db_path else settings.database_path
    database = Database(db_path, busy_timeout=settings.busy_timeout)
    try:
        database.initialize()
        policy = PolicyAdministrator(database).replace_policy(
            max_users=seed.max_users,
            allow_list=seed.allow_list,
            block_list=seed.block_list,
        )
    except StorageUnavailable as exc:
        print(f"Database at {db_path} is unavailable: {exc}", file=sys.stderr)
        return 1

    print(
        f"Imported policy into {db_path}: ceiling {policy.max_users}, "
        f"{len(policy.allow_list)} allowed, {len(policy.block_list)} blocked "
        f"(revision {policy.revision})"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
