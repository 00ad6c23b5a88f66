from datetime import datetime, timezone
from pathlib import Path

from main import _parse_args, _run_admin_cli, main
from chatgate.database import Database
from chatgate.models import LoginAttempt
from chatgate.policy import PolicyAdministrator


def test_default_command_invokes_serve() -> None:
    args = _parse_args([])
    assert args.command == "serve"


def test_default_command_accepts_options_without_subcommand() -> None:
    args = _parse_args(["--host", "127.0.0.1", "--port", "8080"])
    assert args.command == "serve"
    assert args.host == "127.0.0.1"
    assert args.port == 8080


def test_admin_subcommand_still_available() -> None:
    args = _parse_args(["admin", "--service-url", "http://gate.internal:8000"])
    assert args.command == "admin"
    assert args.service_url == "http://gate.internal:8000"


def test_init_db_creates_the_database(tmp_path: Path, monkeypatch, capsys) -> None:
    db_path = tmp_path / "cli.sqlite3"
    monkeypatch.setenv("CHATGATE_DB_PATH", str(db_path))
    monkeypatch.delenv("CHATGATE_POLICY_FILE", raising=False)

    main(["init-db"])

    assert db_path.exists()
    assert "Database initialisation complete." in capsys.readouterr().out
    assert Database(db_path).get_policy().max_users == 10


def test_admin_console_edits_policy(tmp_path: Path, monkeypatch, capsys) -> None:
    database = Database(tmp_path / "console.sqlite3")
    database.initialize()
    answers = iter(
        [
            "2", "3",
            "3", "vip@example.com, Boss@Example.com",
            "5", "spam@example.com",
            "2", "zero",
            "1",
            "10",
        ]
    )
    monkeypatch.setattr("builtins.input", lambda _prompt="": next(answers))

    _run_admin_cli(PolicyAdministrator(database))

    policy = database.get_policy()
    assert policy.max_users == 3
    assert policy.allow_list == ("vip@example.com", "boss@example.com")
    assert policy.block_list == ("spam@example.com",)

    output = capsys.readouterr().out
    assert "Change rejected" in output
    assert "User ceiling: 3" in output
    assert "Goodbye!" in output


def test_admin_console_purge_reports_the_removed_count(tmp_path: Path, monkeypatch, capsys) -> None:
    database = Database(tmp_path / "console.sqlite3")
    database.initialize()
    database.append_login_event(
        LoginAttempt(email="a@example.com", user_id="auth0|one", timestamp=datetime.now(timezone.utc))
    )
    database.append_login_event(
        LoginAttempt(email="a@example.com", user_id="auth0|two", timestamp=datetime.now(timezone.utc))
    )
    answers = iter(["8", "auth0|one", "y", "10"])
    monkeypatch.setattr("builtins.input", lambda _prompt="": next(answers))

    _run_admin_cli(PolicyAdministrator(database))

    output = capsys.readouterr().out
    assert "Removed 1 login event(s) for auth0|one." in output
    assert "quota slot is free" not in output
    assert database.identity_is_known("a@example.com")
