"""kycguard — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class KycGuardSettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "KYCGUARD_",
        "extra": "ignore",
    }

    # ── Storage ────────────────────────────────────────────────
    database_url: str = "sqlite:///./kycguard.db"
    storage_backend: str = "memory"  # "memory" or "sql"

    # ── Access control ─────────────────────────────────────────
    role_cache_ttl_seconds: float = 30.0
    kyc_admin_min_hierarchy: int = 6

    # ── KYC workflow ───────────────────────────────────────────
    kyc_validity_days: int = 365
    high_risk_threshold: int = 70

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = KycGuardSettings()
