import json
import sys
from pathlib import Path

import pytest
from sqlmodel import select

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from devicewatch import database
from devicewatch.auth.models import AuditLog, Identity, IdentityRole
from devicewatch.auth.passwords import verify_password
from devicewatch.config import settings


@pytest.fixture()
def cli_db(tmp_path, monkeypatch):
    original_url = settings.DATABASE_URL
    monkeypatch.setattr(settings, "INITIAL_ADMIN_CONSUMER_NO", "")
    db_url = f"sqlite:///{tmp_path / 'cli.sqlite3'}"
    database.reset_session_factory(db_url)
    try:
        yield db_url
    finally:
        database.reset_session_factory(original_url)


def _load_cli():
    from scripts import manage_identities

    return manage_identities


def test_create_admin_command_creates_identity_and_audit_log(cli_db):
    cli = _load_cli()
    result = cli.main(
        [
            "--database-url",
            cli_db,
            "create-admin",
            "--consumer-no",
            "ADMIN-1",
            "--password",
            "ultra-secret",
        ]
    )
    assert result == 0

    with database.SessionLocal() as session:
        identity = session.exec(
            select(Identity).where(Identity.consumer_no == "ADMIN-1")
        ).first()
        assert identity is not None
        assert identity.role == IdentityRole.ADMIN
        audit = session.exec(select(AuditLog).where(AuditLog.action == "admin_bootstrap")).first()
        assert audit is not None


def test_create_admin_force_rotates_password(cli_db):
    cli = _load_cli()
    base = ["--database-url", cli_db, "create-admin", "--consumer-no", "ADMIN-1"]
    assert cli.main(base + ["--password", "first-secret"]) == 0
    assert cli.main(base + ["--password", "second-secret"]) == 0

    with database.SessionLocal() as session:
        identity = session.exec(select(Identity).where(Identity.consumer_no == "ADMIN-1")).one()
        assert verify_password("first-secret", identity.hashed_password)

    assert cli.main(base + ["--password", "second-secret", "--force"]) == 0

    with database.SessionLocal() as session:
        identity = session.exec(select(Identity).where(Identity.consumer_no == "ADMIN-1")).one()
        assert verify_password("second-secret", identity.hashed_password)
        audit = session.exec(
            select(AuditLog).where(AuditLog.action == "admin_password_rotated")
        ).first()
        assert audit is not None


def test_list_command_prints_identities_without_hashes(cli_db, capsys):
    cli = _load_cli()
    cli.main(["--database-url", cli_db, "create-admin", "--consumer-no", "ADMIN-1", "--password", "x" * 8])
    capsys.readouterr()

    assert cli.main(["--database-url", cli_db, "list", "--json"]) == 0

    listed = json.loads(capsys.readouterr().out)
    assert [entry["consumerNo"] for entry in listed] == ["ADMIN-1"]
    assert "hashedPassword" not in listed[0]


def test_rotate_secret_updates_env_file_and_logs(cli_db, tmp_path):
    cli = _load_cli()
    env_file = tmp_path / ".env"
    env_file.write_text("TOKEN_SECRET=old\nWEB_PORT=5000\n")

    result = cli.main(
        [
            "--database-url",
            cli_db,
            "rotate-secret",
            "--env-file",
            str(env_file),
        ]
    )
    assert result == 0
    contents = env_file.read_text()
    assert "TOKEN_SECRET=old" not in contents
    assert "TOKEN_SECRET=" in contents
    assert "WEB_PORT=5000" in contents

    with database.SessionLocal() as session:
        audit = session.exec(select(AuditLog).where(AuditLog.action == "secrets_rotated")).first()
        assert audit is not None
