"""Application settings via pydantic-settings. Loads from environment and .env file."""

from __future__ import annotations

import secrets

from pydantic import model_validator
from pydantic_settings import BaseSettings

# What the deadline sweep does with a round whose submission window closes empty.
#   hold    -- leave it in ``submitting`` until an admin intervenes
#   archive -- walk submitting -> voting -> revealed -> archived in one sweep
EMPTY_ROUND_POLICIES = frozenset({"hold", "archive"})

VALID_ENVS = frozenset({"development", "staging", "production"})


class Settings(BaseSettings):
    """Music League service configuration.

    All values can be overridden via environment variables or .env file.
    """

    session_secret_key: str = ""

    # Database
    database_url: str = "sqlite+aiosqlite:///musicleague.db"

    # Environment
    musicleague_env: str = "development"

    # Round deadline sweep
    musicleague_auto_advance: bool = True
    musicleague_sweep_cron: str = "* * * * *"
    musicleague_empty_round_policy: str = "hold"

    # Invites
    musicleague_invite_code_bytes: int = 4  # 8 hex characters

    # Moderation log
    musicleague_moderation_page_size: int = 50

    # Logging
    musicleague_log_level: str = "INFO"

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    @model_validator(mode="after")
    def _ensure_session_secret(self) -> Settings:
        """Auto-generate session secret in dev; reject missing secret in production."""
        if not self.session_secret_key:
            if self.musicleague_env == "production":
                msg = (
                    "SESSION_SECRET_KEY must be set in production. "
                    "Generate one with: python -c "
                    '"import secrets; print(secrets.token_urlsafe(32))"'
                )
                raise ValueError(msg)
            self.session_secret_key = secrets.token_urlsafe(32)
        return self

    @model_validator(mode="after")
    def _check_choices(self) -> Settings:
        if self.musicleague_env not in VALID_ENVS:
            msg = f"MUSICLEAGUE_ENV must be one of {sorted(VALID_ENVS)}"
            raise ValueError(msg)
        if self.musicleague_empty_round_policy not in EMPTY_ROUND_POLICIES:
            msg = (
                "MUSICLEAGUE_EMPTY_ROUND_POLICY must be one of "
                f"{sorted(EMPTY_ROUND_POLICIES)}"
            )
            raise ValueError(msg)
        if not 2 <= self.musicleague_invite_code_bytes <= 16:
            raise ValueError("MUSICLEAGUE_INVITE_CODE_BYTES must be between 2 and 16")
        if not 1 <= self.musicleague_moderation_page_size <= 100:
            raise ValueError("MUSICLEAGUE_MODERATION_PAGE_SIZE must be between 1 and 100")
        return self

    def effective_sweep_cron(self) -> str | None:
        """Return the cron expression for the deadline sweep, or None when disabled."""
        if not self.musicleague_auto_advance:
            return None
        return self.musicleague_sweep_cron or None
