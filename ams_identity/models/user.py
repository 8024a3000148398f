"""
User Profile Model.

Application-side view of a registered person, resolved from the profile
directory (``users`` table) by email after the backend authenticates a
principal.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, field_validator

from ams_identity.models.enums import UserRole

# Older directory rows predate the manager role.
_LEGACY_ROLES: dict[str, str] = {"department_officer": UserRole.MANAGER}


class UserProfile(BaseModel):
    """Represents a registered application user.

    ``department_id``, ``phone`` and ``position`` are optional directory
    attributes.  ``is_active`` is ``False`` for accounts an administrator
    has switched off; such profiles are never admitted into a session.
    """

    id: str
    name: str
    email: str
    role: UserRole = UserRole.USER
    department_id: Optional[str] = None
    phone: Optional[str] = None
    position: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True, "extra": "ignore"}

    @field_validator("role", mode="before")
    @classmethod
    def _normalise_role(cls, value: object) -> object:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return _LEGACY_ROLES.get(lowered, lowered)
        return value
