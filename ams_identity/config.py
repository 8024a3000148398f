"""
Application Configuration.

Pydantic Settings model for the AMS identity core.
All configuration is loaded from environment variables and .env files.
Inject an AppConfig instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- Supabase ---
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: SecretStr = SecretStr("")

    # --- Directory tables ---
    PROFILES_TABLE: str = "users"
    AUDIT_TABLE: str = "audit_logs"

    # --- Password reset ---
    PASSWORD_RESET_REDIRECT_URL: str = "http://localhost:5173/reset-password"

    # --- MFA ---
    MFA_FRIENDLY_NAME_PREFIX: str = "TOTP"
    MFA_BULK_DISABLE_ATTEMPTS: int = 2

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "ams_identity.log"
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "AppConfig":
        """Emit a startup warning when critical configuration is empty."""
        _log = logging.getLogger("ams_identity.config")

        if not Path(".env").exists():
            _log.warning(
                "No .env file found; all configuration loaded from "
                "environment variables or defaults."
            )

        if not self.SUPABASE_URL or not self.SUPABASE_ANON_KEY.get_secret_value():
            _log.warning(
                "SUPABASE_URL / SUPABASE_ANON_KEY are empty; the identity "
                "backend cannot be reached."
            )

        if self.MFA_BULK_DISABLE_ATTEMPTS < 1:
            raise ValueError("MFA_BULK_DISABLE_ATTEMPTS must be at least 1")

        return self


# ---------------------------------------------------------------------------
# Module-level singleton factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` singleton.

    Uses a check-lock-check pattern so the fast path never takes the lock.
    Prefer constructor injection of ``AppConfig`` in new code.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance
