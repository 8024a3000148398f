"""
User Repository.

Profile Resolver: maps an authenticated backend principal to the
application's user profile by email.
"""

from __future__ import annotations

from typing import Optional

from ams_identity.models.user import UserProfile
from ams_identity.repositories.base_repository import BaseRepository


class UserRepository(BaseRepository):
    """Read access to the ``users`` profile directory.

    Lookups never fall back to a placeholder profile: ``None`` means the
    principal is not an application user, and the caller decides how to
    treat that.
    """

    TABLE = "users"

    async def get_by_email(self, email: str) -> Optional[UserProfile]:
        """Fetch a profile by email address (case-insensitive).

        Args:
            email: The principal's email address.

        Returns:
            The UserProfile if found, or None.

        Raises:
            Exception: Backend failures propagate unchanged.
        """
        normalized_email = email.strip().lower()
        response = await (
            self.supabase.table(self.table)
            .select("*")
            .eq("email", normalized_email)
            .maybe_single()
            .execute()
        )
        # postgrest returns ``None`` instead of an empty response for
        # ``maybe_single`` misses.
        if response is None or not response.data:
            self._logger.debug("No profile found for %s.", normalized_email)
            return None
        return UserProfile(**response.data)
