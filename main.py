"""Command-line interface for the chat login admission gateway."""

from __future__ import annotations
import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Sequence


def _running_in_virtualenv() -> bool:
    """Return ``True`` when the current interpreter is executing inside a venv."""

    base_prefix = getattr(sys, "base_prefix", sys.prefix)
    return sys.prefix != base_prefix


def _bootstrap_virtualenv() -> None:
    """Re-exec the script using the bundled virtualenv interpreter when available."""

    if _running_in_virtualenv():
        return

    root = Path(__file__).resolve().parent
    venv_dir = root / ".venv"
    if not venv_dir.is_dir():
        return

    candidates = (
        venv_dir / "bin" / "python",
        venv_dir / "bin" / "python3",
        venv_dir / "Scripts" / "python.exe",
        venv_dir / "Scripts" / "python",
    )

    script = str(Path(__file__).resolve())
    for candidate in candidates:
        if candidate.exists():
            os.execv(str(candidate), [str(candidate), script, *sys.argv[1:]])


if __name__ == "__main__":
    _bootstrap_virtualenv()

import httpx

from chatgate.config import Settings
from chatgate.database import Database, PolicyConflict, PolicyMalformed, StorageUnavailable
from chatgate.policy import PolicyAdministrator

logger = logging.getLogger("chatgate.main")

_DEFAULT_SERVICE_URL = "http://localhost:8000"


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Chat login admission gateway utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Initialise the gateway database and seed the policy")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP gateway")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port for the HTTP API (default: 8000)",
    )
    serve_parser.add_argument(
        "--ssl-certfile",
        default=None,
        help="Path to the TLS certificate chain in PEM format",
    )
    serve_parser.add_argument(
        "--ssl-keyfile",
        default=None,
        help="Path to the TLS private key in PEM format",
    )

    admin_parser = subparsers.add_parser(
        "admin", help="Launch the interactive administration console"
    )
    admin_parser.add_argument(
        "--service-url",
        default=None,
        help="Base URL of a running gateway (default: CHATGATE_SERVICE_URL or http://localhost:8000)",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "admin", "init-db"}

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _initialise_database(settings: Settings) -> Database:
    seed = settings.policy_seed()
    database = Database(
        settings.database_path,
        busy_timeout=settings.busy_timeout,
        seed=seed.to_policy() if seed else None,
    )
    database.initialize()
    logger.info("Database initialised at %s", settings.database_path)
    return database


def _serve(
    *,
    database: Database,
    settings: Settings,
    host: str,
    port: int,
    ssl_certfile: str | None,
    ssl_keyfile: str | None,
) -> None:
    from chatgate.service import create_app
    import uvicorn

    if bool(ssl_certfile) ^ bool(ssl_keyfile):
        raise SystemExit("Both --ssl-certfile and --ssl-keyfile must be provided together.")

    if not settings.admin_tokens:
        logger.warning("CHATGATE_ADMIN_TOKENS is not set; administration endpoints are disabled")

    protocol = "https" if ssl_certfile and ssl_keyfile else "http"
    logger.info("Starting admission gateway on %s://%s:%s", protocol, host, port)

    app = create_app(database=database, settings=settings)
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level="info",
        ssl_certfile=ssl_certfile,
        ssl_keyfile=ssl_keyfile,
    )


def _run_admin_cli(administrator: PolicyAdministrator, *, service_url: str | None = None) -> None:
    """Provide an interactive policy console for operators."""

    service_url = service_url or os.getenv("CHATGATE_SERVICE_URL") or _DEFAULT_SERVICE_URL

    print("Chat Login Gateway Administration Console")
    print("Press Ctrl+C at any time to exit.\n")

    try:
        while True:
            print("Select an option:")
            print("  1) Show current policy")
            print("  2) Set the user ceiling")
            print("  3) Add addresses to the allow-list")
            print("  4) Remove addresses from the allow-list")
            print("  5) Add addresses to the block-list")
            print("  6) Remove addresses from the block-list")
            print("  7) List recent login events")
            print("  8) Purge a user's login history")
            print("  9) Show the policy reported by the running service")
            print(" 10) Exit")

            choice = input("Enter choice [1-10]: ").strip()

            try:
                if choice == "1":
                    _show_policy(administrator)
                elif choice == "2":
                    _set_ceiling(administrator)
                elif choice in {"3", "4", "5", "6"}:
                    _edit_list(administrator, choice)
                elif choice == "7":
                    _list_events(administrator)
                elif choice == "8":
                    _purge_identity(administrator)
                elif choice == "9":
                    _show_remote_policy(service_url)
                elif choice == "10":
                    print("Goodbye!")
                    return
                else:
                    print("Invalid selection. Please choose a number from the menu.\n")
            except (PolicyMalformed, PolicyConflict) as exc:
                print(f"Change rejected: {exc}")
            except StorageUnavailable as exc:
                print(f"The database is unavailable: {exc}")

            print()
    except KeyboardInterrupt:
        print("\nExiting administration console.")


def _show_policy(administrator: PolicyAdministrator) -> None:
    policy = administrator.get_policy()
    print(f"User ceiling: {policy.max_users} (revision {policy.revision})")
    print(f"Allow-list ({len(policy.allow_list)}): {', '.join(policy.allow_list) or '<empty>'}")
    print(f"Block-list ({len(policy.block_list)}): {', '.join(policy.block_list) or '<empty>'}")


def _set_ceiling(administrator: PolicyAdministrator) -> None:
    raw = input("New user ceiling: ").strip()
    if not raw:
        print("Unchanged.")
        return
    policy = administrator.set_max_users(raw)
    print(f"User ceiling is now {policy.max_users}.")


def _prompt_emails(prompt: str) -> list[str]:
    raw = input(prompt).strip()
    return [item.strip() for item in raw.replace(";", ",").split(",") if item.strip()]


def _edit_list(administrator: PolicyAdministrator, choice: str) -> None:
    which = "allow" if choice in {"3", "4"} else "block"
    adding = choice in {"3", "5"}
    verb = "add to" if adding else "remove from"
    emails = _prompt_emails(f"Addresses to {verb} the {which}-list (comma separated): ")
    if not emails:
        print("Nothing to do.")
        return

    if adding:
        policy = administrator.add_to_list(which, emails)
    else:
        policy = administrator.remove_from_list(which, emails)
    entries = policy.allow_list if which == "allow" else policy.block_list
    print(f"The {which}-list now holds {len(entries)} address(es).")


def _list_events(administrator: PolicyAdministrator, limit: int = 25) -> None:
    events = administrator.list_login_events(limit=limit)
    if not events:
        print("No login events have been recorded.")
        return

    print(f"Showing the {len(events)} most recent login event(s):")
    print(f"{'ID':>6}  {'Email':<32}  {'User':<24}  {'Location':<16}  Time")
    print("-" * 100)
    for event in events:
        when = event.timestamp.strftime("%Y-%m-%d %H:%M:%S %Z")
        location = event.location or "-"
        print(f"{event.id:>6}  {event.email:<32}  {event.user_id:<24}  {location:<16}  {when}")


def _purge_identity(administrator: PolicyAdministrator) -> None:
    identity = input("Email or user id to purge (blank to cancel): ").strip()
    if not identity:
        print("Purge cancelled.")
        return
    confirmation = input(f"Delete every login event for {identity}? [y/N]: ").strip().lower()
    if confirmation not in {"y", "yes"}:
        print("Purge cancelled.")
        return
    removed = administrator.purge_identity(identity)
    print(f"Removed {removed} login event(s) for {identity}.")


def _show_remote_policy(base_url: str) -> None:
    token = os.getenv("CHATGATE_ADMIN_TOKEN")
    if not token:
        print("Set CHATGATE_ADMIN_TOKEN to one of the service's admin tokens before running this command.")
        return

    endpoint = base_url.rstrip("/") + "/api/policy"

    try:
        response = httpx.get(endpoint, headers={"Authorization": f"Bearer {token}"}, timeout=10.0)
    except httpx.HTTPError as exc:
        print(f"Failed to contact the gateway: {exc}")
        return

    if response.status_code in (401, 403):
        print("The gateway rejected the admin token. Verify CHATGATE_ADMIN_TOKEN.")
        return
    if response.status_code != 200:
        print(f"Service responded with {response.status_code}: {response.text.strip()}")
        return

    try:
        payload = response.json()
    except ValueError:
        print("Service returned an unexpected response format.")
        return

    print(f"Service at {base_url} reports:")
    print(f"  ceiling:    {payload.get('maxUsers')}")
    print(f"  allow-list: {', '.join(payload.get('allowList', [])) or '<empty>'}")
    print(f"  block-list: {', '.join(payload.get('blockList', [])) or '<empty>'}")


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    settings = Settings.from_env()
    database = _initialise_database(settings)

    if args.command == "serve":
        _serve(
            database=database,
            settings=settings,
            host=args.host,
            port=args.port,
            ssl_certfile=args.ssl_certfile,
            ssl_keyfile=args.ssl_keyfile,
        )
    elif args.command == "admin":
        _run_admin_cli(PolicyAdministrator(database), service_url=args.service_url)
    elif args.command == "init-db":
        print("Database initialisation complete.")


if __name__ == "__main__":
    main()
