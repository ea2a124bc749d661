"""
Central configuration using Pydantic BaseSettings.

Validates all env vars at startup (fail-fast). Required secrets refuse
to start in production but get safe defaults in TESTING mode.

Usage:
    from config.settings import get_settings

    settings = get_settings()
    print(settings.mfa.issuer_name)

Lazy initialization: get_settings() creates the singleton on first call.
Tests can reset via get_settings.cache_clear().
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings


def _is_testing() -> bool:
    """Check if running in test mode."""
    return (
        os.getenv("TESTING", "").lower() in ("true", "1")
        or os.getenv("FLASK_ENV", "") == "testing"
    )


def _default_data_dir() -> Path:
    return Path(__file__).parent.parent / "data"


# =============================================================================
# Nested Settings Groups
# =============================================================================


class AuthSettings(BaseSettings):
    """JWT configuration for the admin API."""

    model_config = {"env_prefix": "", "extra": "ignore"}

    jwt_secret: SecretStr = SecretStr("")
    jwt_algorithm: str = "HS256"
    jwt_expiration_hours: int = 24

    # Step-up header checked by mfa_required
    mfa_token_header: str = "X-MFA-Code"


class MFASettings(BaseSettings):
    """Second-factor configuration.

    The OTP constants are shared by setup and verification; changing one
    side only would make every token fail.
    """

    model_config = {"env_prefix": "MFA_", "extra": "ignore"}

    enabled: bool = True
    issuer_name: str = "PersonalCloud"
    encryption_key: SecretStr = SecretStr("")

    totp_interval: int = 30
    totp_digits: int = 6
    valid_window: int = 1  # steps accepted either side of now

    backup_code_count: int = 10
    backup_code_length: int = 8

    device_trust_days: int = 30
    history_limit: int = 50

    # Holders of this permission must enroll even if they never opted in
    enforce_permission: str = "security.mfa_enforce"


class AuditSettings(BaseSettings):
    """Audit trail retention and persistence."""

    model_config = {"env_prefix": "AUDIT_", "extra": "ignore"}

    max_entries: int = 100_000
    prune_batch: int = 1_000

    sink: Literal["memory", "sqlite", "jsonl"] = "memory"
    sqlite_path: Path = _default_data_dir() / "audit.db"
    jsonl_path: Path = _default_data_dir() / "audit.jsonl"

    redaction_enabled: bool = True
    dead_letter_size: int = 1_000


# =============================================================================
# Root Settings
# =============================================================================


class AppSettings(BaseSettings):
    """Root application settings composing all sub-settings."""

    model_config = {"env_prefix": "", "extra": "ignore", "env_file": ".env", "env_file_encoding": "utf-8"}

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = ""

    # Nested groups (initialized separately to support env_prefix)
    auth: AuthSettings = None  # type: ignore[assignment]
    mfa: MFASettings = None  # type: ignore[assignment]
    audit: AuditSettings = None  # type: ignore[assignment]

    @model_validator(mode="before")
    @classmethod
    def _init_nested(cls, values):
        """Initialize nested settings from environment."""
        if values.get("auth") is None:
            values["auth"] = AuthSettings()
        if values.get("mfa") is None:
            values["mfa"] = MFASettings()
        if values.get("audit") is None:
            values["audit"] = AuditSettings()
        return values

    @model_validator(mode="after")
    def _validate_required_secrets(self):
        """Require JWT_SECRET in production; bypass only in TESTING mode."""
        if _is_testing():
            return self

        if not self.auth.jwt_secret.get_secret_value():
            raise ValueError(
                "JWT_SECRET env var is required. "
                "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
            )

        return self


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """
    Get the application settings singleton.

    Lazy-initialized on first call. Validates all env vars (fail-fast).
    Tests can reset via: get_settings.cache_clear()
    """
    return AppSettings()
