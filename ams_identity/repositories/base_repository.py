"""
Base Repository.

Provides shared infrastructure for all repositories:
- SupabaseConnection reference
- Logger reference
- Table name, overridable per deployment
"""

from __future__ import annotations

from typing import Optional

from supabase import AsyncClient

from ams_identity.database import SupabaseConnection
from ams_identity.logger import StructuredLogger


class BaseRepository:
    """Base class for all repositories. Receives dependencies via __init__."""

    TABLE: str = ""

    def __init__(
        self,
        db: SupabaseConnection,
        logger: StructuredLogger,
        table: Optional[str] = None,
    ) -> None:
        self._db = db
        self._logger = logger
        self._table: str = table or self.TABLE

    @property
    def supabase(self) -> AsyncClient:
        """Returns the Supabase client for directory operations."""
        return self._db.client

    @property
    def table(self) -> str:
        return self._table
