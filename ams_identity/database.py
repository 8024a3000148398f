"""
Backend Connection Layer.

Owns the asynchronous Supabase client shared by the identity backend
adapter and the repositories.  This module only manages the connection;
it contains no query or authentication logic.

Usage (dependency injection at app startup)::

    from ams_identity.database import SupabaseConnection
    from ams_identity.logger import StructuredLogger

    connection = SupabaseConnection(
        supabase_url=config.SUPABASE_URL,
        supabase_key=config.SUPABASE_ANON_KEY.get_secret_value(),
        logger=StructuredLogger(name="database"),
    )
    await connection.connect()
"""

from __future__ import annotations

from typing import Optional

from supabase import AsyncClient, acreate_client

from ams_identity.logger import StructuredLogger


class BackendNotConfiguredError(ConnectionError):
    """Raised when the Supabase client was never created."""


class SupabaseConnection:
    """Holds the ``supabase`` ``AsyncClient`` for the process.

    When ``supabase_url`` or ``supabase_key`` is empty no client is
    created and the ``client`` property raises
    ``BackendNotConfiguredError``, which callers classify as an outage.

    Parameters
    ----------
    supabase_url:
        The Supabase project URL (e.g. ``https://xyz.supabase.co``).
    supabase_key:
        The Supabase anonymous key.
    logger:
        A ``StructuredLogger`` instance for structured JSON log output.
    """

    def __init__(
        self,
        supabase_url: str,
        supabase_key: str,
        logger: StructuredLogger,
    ) -> None:
        self._url: str = supabase_url
        self._key: str = supabase_key
        self._logger: StructuredLogger = logger
        self._client: Optional[AsyncClient] = None

    async def connect(self) -> None:
        """Create the client.  Safe to call more than once."""
        if self._client is not None:
            return
        if not self._url or not self._key:
            self._logger.warning(
                "Supabase credentials not configured; identity backend unavailable."
            )
            return
        try:
            self._client = await acreate_client(self._url, self._key)
            self._logger.info("Supabase client initialized.")
        except (ValueError, TypeError) as exc:
            self._logger.warning(
                "Supabase credential format error: %s. Identity backend unavailable.",
                exc,
            )

    @property
    def client(self) -> AsyncClient:
        """Return the initialised Supabase client.

        Raises
        ------
        BackendNotConfiguredError
            If the client was never created.
        """
        if self._client is None:
            raise BackendNotConfiguredError(
                "Supabase client is not initialised. "
                "Check SUPABASE_URL and SUPABASE_ANON_KEY."
            )
        return self._client

    @property
    def is_online(self) -> bool:
        """``True`` when the Supabase client is available."""
        return self._client is not None

    def close(self) -> None:
        """Drop the client.  Safe to call multiple times."""
        if self._client is not None:
            self._client = None
            self._logger.info("Supabase client released.")
