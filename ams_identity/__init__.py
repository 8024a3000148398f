"""AMS identity core: sessions, TOTP step-up and enrollment over Supabase Auth."""

__version__ = "0.1.0"
