"""
Configuration management for the replenishment engine
"""
from pydantic_settings import BaseSettings
from pydantic import Field
from functools import lru_cache
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "Restock Replenishment Engine"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_to_file: bool = True

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./restock.db"

    # Sales window
    default_window_days: int = 30
    allowed_window_days: str = "30,60"  # comma-separated
    projection_horizon_days: int = 30
    sales_source: str = "ledger"  # ledger | metrics

    # Replenishment policy defaults (per-tenant overrides below)
    critical_days_threshold: float = 7
    high_days_threshold: float = 14
    medium_days_threshold: float = 30
    min_order_sample: int = 3
    safety_stock_factor: float = Field(0.20, ge=0, le=1)
    no_demand_days_of_supply: float = 9999.0
    # JSON mapping tenant_id -> partial policy
    # Example: {"acme":{"critical_days_threshold":10,"safety_stock_factor":0.25}}
    replenishment_policy_overrides: str = ""

    # Recompute concurrency
    recompute_lock_ttl_seconds: int = 900
    recompute_timeout_seconds: Optional[float] = None

    # Ranked query cache
    ranked_cache_ttl_seconds: int = 300

    # Scheduler
    enable_scheduler: bool = True
    recompute_schedule: str = "30 3 * * *"
    scheduler_timezone: str = "UTC"

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def allowed_windows(self) -> List[int]:
        """Parsed allowed_window_days"""
        return [int(part) for part in self.allowed_window_days.split(",") if part.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
