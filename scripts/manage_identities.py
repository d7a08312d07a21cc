#!/usr/bin/env python3
"""Management helpers for Device Watch identities and secrets."""
from __future__ import annotations

import argparse
import json
import secrets
import sys
from pathlib import Path
from typing import Dict, Iterable, List

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from devicewatch import database, identities
from devicewatch.auth.models import IdentityRole
from devicewatch.auth.passwords import hash_password
from devicewatch.auth.service import init_auth_storage, record_audit_event
from devicewatch.config import settings


def _update_env_file(env_path: Path, updates: Dict[str, str]) -> None:
    lines: List[str]
    if env_path.exists():
        lines = env_path.read_text().splitlines()
    else:
        lines = []

    rendered: List[str] = []
    seen: set[str] = set()
    for line in lines:
        key, sep, _value = line.partition("=")
        stripped_key = key.strip()
        if sep and stripped_key in updates:
            rendered.append(f"{stripped_key}={updates[stripped_key]}")
            seen.add(stripped_key)
        else:
            rendered.append(line)

    for key, value in updates.items():
        if key not in seen:
            rendered.append(f"{key}={value}")

    env_path.write_text("\n".join(rendered) + "\n")


def _log_system_event(action: str, summary: str, data: Dict[str, object] | None = None) -> None:
    with database.SessionLocal() as session:
        record_audit_event(
            session,
            actor=None,
            action=action,
            summary=summary,
            data=data or {},
            commit=True,
        )


def _command_create_admin(args: argparse.Namespace) -> int:
    init_auth_storage()
    with database.SessionLocal() as session:
        existing = identities.find_by_consumer_no(session, args.consumer_no)
        if existing:
            if not args.force:
                print(f"Identity '{args.consumer_no}' already exists; skipping")
                return 0
            existing.role = IdentityRole.ADMIN
            identities.update_credential(session, existing, hash_password(args.password))
            _log_system_event(
                "admin_password_rotated",
                f"Rotated credentials for {existing.consumer_no}",
                {"identity_id": existing.id},
            )
            print(f"Updated password for existing admin '{existing.consumer_no}'")
            return 0

        identity = identities.create(
            session,
            consumer_no=args.consumer_no,
            consumer_name=args.name,
            consumer_address=args.address,
            hashed_password=hash_password(args.password),
            device_id=None,
            role=IdentityRole.ADMIN,
        )
        _log_system_event(
            "admin_bootstrap",
            f"Created admin identity {identity.consumer_no}",
            {"identity_id": identity.id},
        )
        print(f"Created admin identity '{identity.consumer_no}' (id={identity.id})")
        return 0


def _command_list(args: argparse.Namespace) -> int:
    init_auth_storage()
    with database.SessionLocal() as session:
        views = identities.list_all(session)
    if args.json:
        print(json.dumps([view.as_public_dict() for view in views], indent=2))
        return 0
    if not views:
        print("No identities registered")
        return 0
    for view in views:
        devices = ", ".join(view.owned_devices) or "-"
        print(f"{view.id}\t{view.consumer_no}\t{view.role.value}\t{view.consumer_name}\t{devices}")
    return 0


def _command_rotate_secret(args: argparse.Namespace) -> int:
    env_path = Path(args.env_file).expanduser().resolve()
    updates = {"TOKEN_SECRET": secrets.token_urlsafe(48)}
    env_path.parent.mkdir(parents=True, exist_ok=True)
    _update_env_file(env_path, updates)
    init_auth_storage()
    _log_system_event(
        "secrets_rotated",
        "Generated a new token secret",
        {"env_file": str(env_path), "keys": sorted(updates)},
    )
    print(f"Wrote new secret to {env_path}; issued tokens stop verifying after restart")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--database-url",
        dest="database_url",
        help="Override the database URL",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_admin = subparsers.add_parser(
        "create-admin", help="Create an admin identity or rotate its password",
    )
    create_admin.add_argument("--consumer-no", dest="consumer_no", required=True)
    create_admin.add_argument("--password", required=True)
    create_admin.add_argument("--name", default="Administrator")
    create_admin.add_argument("--address", default="-")
    create_admin.add_argument(
        "--force",
        action="store_true",
        help="Update the password if the identity already exists",
    )
    create_admin.set_defaults(func=_command_create_admin)

    list_cmd = subparsers.add_parser("list", help="List identities without credentials")
    list_cmd.add_argument("--json", action="store_true", help="Emit JSON")
    list_cmd.set_defaults(func=_command_list)

    rotate = subparsers.add_parser(
        "rotate-secret", help="Generate a new token secret and update the env file",
    )
    rotate.add_argument(
        "--env-file",
        default=".env",
        help="Path to the environment file (default: %(default)s)",
    )
    rotate.set_defaults(func=_command_rotate_secret)

    return parser


def main(argv: Iterable[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.database_url:
        database.reset_session_factory(args.database_url)
        settings.DATABASE_URL = args.database_url

    handler = getattr(args, "func", None)
    if handler is None:
        parser.print_help()
        return 1

    return handler(args)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
