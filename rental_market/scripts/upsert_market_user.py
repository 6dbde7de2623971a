#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import sys

from dotenv import load_dotenv

APP_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if APP_DIR not in sys.path:
    sys.path.insert(0, APP_DIR)

load_dotenv()

from sqlalchemy import create_engine, select  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from models.market_models import User, UserRole, UserType  # noqa: E402


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create/update one Users record directly from terminal.",
    )
    parser.add_argument("--user-id", type=int, default=None, help="Existing UserID to update")
    parser.add_argument("--full-name", default=None)
    parser.add_argument("--email", default=None)
    parser.add_argument("--phone", default=None)
    parser.add_argument("--user-type", choices=[t.value for t in UserType], default=None)
    parser.add_argument("--role", choices=[r.value for r in UserRole], default=None)
    parser.add_argument(
        "--issue-token",
        action="store_true",
        help="Print a session token for the user (needs SESSION_SIGNING_SECRET).",
    )
    parser.add_argument(
        "--db-url",
        default=os.environ.get("RENTAL_MARKET_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to RENTAL_MARKET_DB_URL env var.",
    )
    return parser


def upsert_user(db, args) -> User:
    user = None
    if args.user_id is not None:
        user = db.get(User, args.user_id)
    elif args.email:
        user = db.scalar(select(User).where(User.Email == args.email))

    if user is None:
        if not args.full_name:
            raise ValueError("--full-name is required when creating a user.")
        user = User(
            FullName=args.full_name,
            UserType=UserType(args.user_type or UserType.TENANT.value),
            Role=UserRole(args.role or UserRole.USER.value),
            IsActive=True,
        )
        if args.user_id is not None:
            user.UserID = args.user_id
        db.add(user)

    if args.full_name:
        user.FullName = args.full_name
    if args.email:
        user.Email = args.email
    if args.phone:
        user.PhoneNumber = args.phone
    if args.user_type:
        user.UserType = UserType(args.user_type)
    if args.role:
        user.Role = UserRole(args.role)

    db.commit()
    db.refresh(user)
    return user


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.user_id is not None and args.user_id <= 0:
        parser.error("--user-id must be > 0")
    if not args.db_url:
        parser.error("Missing DB URL. Set RENTAL_MARKET_DB_URL or pass --db-url.")

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    with factory() as db:
        try:
            user = upsert_user(db, args)
        except ValueError as exc:
            parser.error(str(exc))

    print(
        f"OK user_id={user.UserID} role={user.Role.value} "
        f"user_type={user.UserType.value} email={user.Email or ''}"
    )
    if args.issue_token:
        from services.session_service import create_session

        print(create_session(user.UserID, user.Role.value))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
