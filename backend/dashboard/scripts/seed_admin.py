#!/usr/bin/env python3
"""Seed script to create the first admin account through the setup flow."""

from __future__ import annotations

import argparse
import asyncio
from getpass import getpass
from typing import Optional

from backend.dashboard.app.config import settings
from backend.dashboard.app.errors import AuthError
from backend.dashboard.app.federation import IdentityFederationBridge
from backend.dashboard.app.orchestrator import AuthenticationOrchestrator
from backend.dashboard.app.storage import MemoryCache
from backend.dashboard.db.base import Base, create_engine, create_session, dispose_engine


async def _ensure_schema(database_url: str) -> None:
    engine = create_engine(database_url, echo=False)
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)


async def _seed_admin(
    *,
    database_url: str,
    email: str,
    password: str,
    name: Optional[str],
) -> None:
    await _ensure_schema(database_url)

    cache = MemoryCache()
    session = create_session()
    try:
        orchestrator = AuthenticationOrchestrator(
            session,
            cache=cache,
            bridge=IdentityFederationBridge(cache),
        )
        user = await orchestrator.setup_first_admin(email=email, password=password, name=name)
    except AuthError as exc:
        await session.rollback()
        raise SystemExit(f"Failed to create admin user: {exc.message}") from exc
    finally:
        await session.close()
        await dispose_engine()

    print(f"Admin account ready: {user.username} <{user.email}>")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed the first admin user of the dashboard database")
    parser.add_argument(
        "--email",
        default=settings.auth.admin_email,
        required=settings.auth.admin_email is None,
        help="Admin e-mail address (defaults to ADMIN_EMAIL)",
    )
    parser.add_argument("--name", default=None, help="Display name for the admin user")
    parser.add_argument(
        "--password",
        default=settings.auth.admin_password,
        help="Admin password. If omitted, ADMIN_PASSWORD or an interactive prompt is used.",
    )
    parser.add_argument(
        "--database-url",
        default=settings.database_url,
        help="Database URL to connect to (defaults to configured application URL).",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    password = args.password or getpass("Admin password: ")
    if not password:
        raise SystemExit("Password cannot be empty")

    asyncio.run(
        _seed_admin(
            database_url=args.database_url,
            email=str(args.email),
            password=password,
            name=args.name,
        )
    )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
