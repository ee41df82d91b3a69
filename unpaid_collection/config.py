# config.py
# ============================================================================
# UNPAID COLLECTION v1.0 — SETTINGS
# ============================================================================
# Environment-driven settings for the collection flow
# ============================================================================

import os
from dataclasses import dataclass


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class CollectionSettings:
    """Configuration for the remote billing API and the pending store."""
    api_url: str = "http://localhost:8080/api"
    api_timeout_seconds: float = 5.0

    # Bounded waits for the two suspending gateway calls
    charge_timeout_seconds: float = 10.0
    check_timeout_seconds: float = 10.0

    pending_dir: str = ".pending_payments"

    # Stale pending policy (flag + operator sweep, never auto-delete)
    pending_stale_hours: int = 24
    sweep_enabled: bool = False
    sweep_interval_seconds: int = 3600

    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls) -> "CollectionSettings":
        return cls(
            api_url=os.getenv("COLLECTION_API_URL", "http://localhost:8080/api"),
            api_timeout_seconds=float(os.getenv("COLLECTION_API_TIMEOUT", "5.0")),
            charge_timeout_seconds=float(os.getenv("COLLECTION_CHARGE_TIMEOUT", "10.0")),
            check_timeout_seconds=float(os.getenv("COLLECTION_CHECK_TIMEOUT", "10.0")),
            pending_dir=os.getenv("COLLECTION_PENDING_DIR", ".pending_payments"),
            pending_stale_hours=int(os.getenv("PENDING_STALE_HOURS", "24")),
            sweep_enabled=_env_bool("PENDING_SWEEP_ENABLED", "false"),
            sweep_interval_seconds=int(os.getenv("PENDING_SWEEP_INTERVAL", "3600")),
            log_level=os.getenv("COLLECTION_LOG_LEVEL", "INFO").upper(),
            log_json=_env_bool("COLLECTION_LOG_JSON", "true"),
        )


settings = CollectionSettings.from_env()
