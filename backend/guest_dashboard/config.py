"""
Application settings
Read from environment variables / .env
"""
import logging
from typing import Optional
from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Runtime settings"""

    APP_NAME: str = "Guest Dashboard Core"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Reservations
    HOLD_TTL_SECONDS: int = 300

    # Location / geofencing
    LOCATION_STALENESS_SECONDS: float = 120.0
    LOCATION_MIN_INTERVAL_SECONDS: float = 5.0
    LOCATION_POLL_SECONDS: float = 10.0
    WALKING_SPEED_KMH: float = 5.0

    # Inventory
    INVENTORY_EXPIRING_DAYS: int = 3
    EXPIRY_SWEEP_SECONDS: int = 3600
    EXPIRY_WRITE_OFF: bool = False

    # State authority
    UNDO_HISTORY_SIZE: int = 20
    TAX_RATE: float = 0.08
    SERVICE_FEE: float = 2.5

    # Configuration files (YAML)
    TRIGGER_RULES_FILE: Optional[str] = None
    ZONES_FILE: Optional[str] = None
    CATALOG_FILE: Optional[str] = None

    # Persistence
    PERSISTENCE_ENABLED: bool = True
    DATABASE_URL: str = "sqlite:///./guest_dashboard.db"

    model_config = ConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


def configure_logging(level: Optional[str] = None) -> None:
    """Apply LOG_LEVEL to the root logger."""
    logging.basicConfig(
        level=getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


# Process-wide defaults; the runtime accepts an explicit Settings instance.
settings = Settings()
