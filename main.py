"""
AMS Identity Core Entry Point.

Bootstraps the dependency graph via constructor injection, connects to
Supabase, restores any persisted session and reports it.  Every
subsystem is wired here; there are no module-level globals.

Usage::

    python main.py
"""

from __future__ import annotations

import asyncio
import sys

from ams_identity.config import get_config
from ams_identity.database import SupabaseConnection
from ams_identity.logger import StructuredLogger, get_logger
from ams_identity.services import create_services


async def run() -> int:
    """Wire dependencies, bootstrap the session and shut down cleanly."""
    logger: StructuredLogger = get_logger("main")
    logger.info("Starting AMS identity core...")

    # ------------------------------------------------------------------
    # 1. Configuration (from .env / environment variables)
    # ------------------------------------------------------------------
    config = get_config()

    # ------------------------------------------------------------------
    # 2. Backend connection
    # ------------------------------------------------------------------
    connection = SupabaseConnection(
        supabase_url=config.SUPABASE_URL,
        supabase_key=config.SUPABASE_ANON_KEY.get_secret_value(),
        logger=StructuredLogger(name="database"),
    )
    await connection.connect()
    if not connection.is_online:
        logger.error("Identity backend is not configured; nothing to bootstrap.")
        return 1

    # ------------------------------------------------------------------
    # 3. Service container (single composition root)
    # ------------------------------------------------------------------
    services = create_services(connection, config)
    auth_service = services["auth_service"]

    # ------------------------------------------------------------------
    # 4. Session bootstrap
    # ------------------------------------------------------------------
    try:
        async with auth_service:
            user = auth_service.user
            if user is None:
                logger.info("No active session.")
            else:
                logger.info(
                    "Active session: %s (role: %s)",
                    user.email,
                    user.role,
                    extra={"event": "SESSION_RESTORED", "user_id": user.id},
                )
    finally:
        connection.close()
        logger.info("AMS identity core shut down.")
    return 0


def main() -> None:
    try:
        sys.exit(asyncio.run(run()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
