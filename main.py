#!/usr/bin/env python3
"""
Estate Auth -- administration CLI.

Bootstraps users, roles and permissions, and manages runtime security config
against the database named by DATABASE_URL. The HTTP API has no endpoints for
creating users or roles; this is the way to seed them.

Usage:
  python main.py hash-password
  python main.py create-user alice alice@example.com
  python main.py create-role admin --description "Security administrators"
  python main.py create-permission security_config:read security_config read
  python main.py grant admin security_config:read
  python main.py assign alice admin
  python main.py set-config MAX_FAILED_ATTEMPTS 10
  python main.py show-config
  python main.py sessions alice
  python main.py revoke-sessions alice

Environment variables:
  DATABASE_URL      SQLAlchemy URL (default: sqlite:///estateauth.db)
  PASSWORD_PEPPER   Server-wide pepper; must match the running API
  DEBUG             true to allow auto-generated secrets (development only)
"""

import argparse
import getpass
import sys

from sqlalchemy.exc import IntegrityError

from auth.audit import AuditRecorder
from auth.models import AuditEventType, User
from auth.passwords import hash_password
from auth.security_config import resolve_values, update_security_config
from auth.store import AuditStore, SecurityConfigStore, SessionStore, UserStore, open_engine
from core.config import get_settings


def _read_password() -> str:
    """Prompt twice without echo. Piped stdin is read as a single line."""
    if not sys.stdin.isatty():
        return sys.stdin.readline().rstrip("\n")
    first = getpass.getpass("Password: ")
    if first != getpass.getpass("Repeat password: "):
        print("  [!] Passwords do not match.")
        sys.exit(1)
    return first


def _require_user(users: UserStore, username: str) -> User:
    user = users.get_by_username(username)
    if user is None:
        print(f"  [!] No such user: {username}")
        sys.exit(1)
    return user


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="estate-auth",
        description="Administer Estate Auth users, roles, permissions and security config.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-user alice alice@example.com
  echo 'S3cret!pass' | python main.py create-user bob bob@example.com
  python main.py grant admin audit_logs:read
  python main.py set-config ACCESS_TOKEN_TTL_MINUTES 30
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("hash-password", help="Print a bcrypt hash for a password (prompt or stdin)")

    p = sub.add_parser("create-user", help="Create a user (password read from prompt or stdin)")
    p.add_argument("username")
    p.add_argument("email")

    p = sub.add_parser("create-role", help="Create a role")
    p.add_argument("name")
    p.add_argument("--description", default="")

    p = sub.add_parser("create-permission", help="Create a permission")
    p.add_argument("name", help="Permission name, e.g. audit_logs:read")
    p.add_argument("resource")
    p.add_argument("action")

    p = sub.add_parser("grant", help="Grant a permission to a role")
    p.add_argument("role")
    p.add_argument("permission")

    p = sub.add_parser("assign", help="Assign a role to a user")
    p.add_argument("username")
    p.add_argument("role")

    p = sub.add_parser("set-config", help="Override a security tunable")
    p.add_argument("key")
    p.add_argument("value", type=int)

    sub.add_parser("show-config", help="Print the effective security tunables")

    p = sub.add_parser("sessions", help="List a user's sessions")
    p.add_argument("username")

    p = sub.add_parser("revoke-sessions", help="Revoke every session of a user")
    p.add_argument("username")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    settings = get_settings()
    if args.command == "hash-password":
        print(hash_password(_read_password(), settings.password_pepper))
        return

    engine = open_engine(settings.database_url)
    users = UserStore(engine)
    # CLI changes are audited with user_id=None.
    audit = AuditRecorder(AuditStore(engine))

    try:
        if args.command == "create-user":
            password = _read_password()
            if not password:
                print("  [!] Empty password.")
                sys.exit(1)
            user = User(
                username=args.username,
                email=args.email,
                password_hash=hash_password(password, settings.password_pepper),
            )
            print(f"  Created user {args.username} ({users.create_user(user)})")

        elif args.command == "create-role":
            role = users.create_role(args.name, args.description)
            print(f"  Created role {role.name} ({role.id})")

        elif args.command == "create-permission":
            perm = users.create_permission(args.name, args.resource, args.action)
            print(f"  Created permission {perm.name} ({perm.id})")

        elif args.command == "grant":
            role = users.get_role(args.role)
            perm = users.get_permission(args.permission)
            if role is None or perm is None:
                print("  [!] Unknown role or permission.")
                sys.exit(1)
            users.grant_permission(role.id, perm.id)
            print(f"  Granted {perm.name} to {role.name}")

        elif args.command == "assign":
            user = _require_user(users, args.username)
            role = users.get_role(args.role)
            if role is None:
                print(f"  [!] No such role: {args.role}")
                sys.exit(1)
            users.assign_role(user.id, role.id)
            print(f"  Assigned {role.name} to {user.username}")

        elif args.command == "set-config":
            try:
                old, new = update_security_config(settings, SecurityConfigStore(engine), args.key, args.value)
            except ValueError as exc:
                print(f"  [!] {exc}")
                sys.exit(1)
            audit.record(
                AuditEventType.CONFIG_CHANGE,
                resource="security_config",
                action="cli",
                old_values={args.key: old},
                new_values={args.key: new},
            )
            print(f"  {args.key}: {old} -> {new} (running API instances pick this up on restart)")

        elif args.command == "show-config":
            for key, value in resolve_values(settings, SecurityConfigStore(engine)).items():
                print(f"  {key:<28} {value}")
            print(f"  {'ROTATE_REFRESH_TOKENS':<28} {settings.rotate_refresh_tokens}")

        elif args.command == "sessions":
            user = _require_user(users, args.username)
            for s in SessionStore(engine).list_by_user(user.id):
                state = "revoked" if s.revoked else "active"
                print(f"  {s.token_jti}  {s.device_id:<24} {state:<8} expires {s.expires_at.isoformat()}")

        elif args.command == "revoke-sessions":
            user = _require_user(users, args.username)
            count = SessionStore(engine).revoke_by_user(user.id)
            audit.record(
                AuditEventType.LOGOUT_ALL,
                resource="auth",
                action="cli",
                new_values={"target_user_id": user.id, "revoked_sessions": count},
            )
            print(f"  Revoked {count} session(s) for {user.username}")

    except IntegrityError:
        print("  [!] Already exists.")
        sys.exit(1)
    finally:
        engine.dispose()


if __name__ == "__main__":
    main()
