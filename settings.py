from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # `.env.prod` takes priority over `.env`
        env_file=(".env", ".env.prod")
    )

    # Commission retained by the agency when a contract omits one
    default_commission_percentage: Decimal = Decimal("15.00")
    default_currency: str = "IDR"

    # Listing sizes
    items_per_page: int = 20
    jobs_per_page: int = 15
    search_limit: int = 50

    # CloudWatch Embedded Metrics
    metrics_enabled: bool = True
    metrics_namespace: str = "EngagementEngine"

    # Include exception details in 5xx bodies (local dev only)
    debug: bool = False


@lru_cache()
def get_settings() -> Settings:
    return Settings()
