from decimal import Decimal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Stockledger Engine"
    env: str = "dev"
    log_level: str = "INFO"

    # DATABASE
    database_url: str = "sqlite:///./stockledger.db"
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_max_overflow: int = Field(default=20, ge=0, le=200)
    db_pool_timeout_seconds: int = Field(default=30, ge=1, le=300)
    db_pool_recycle_seconds: int = Field(default=1800, ge=30, le=86_400)
    db_lock_timeout_ms: int | None = Field(default=None, ge=1)
    db_auto_create: bool = True

    # INVENTORY
    default_warehouse_name: str = "Main Warehouse"
    default_warehouse_code: str = "MAIN"
    default_stock_state: str = "sellable"
    track_location_states: bool = True
    low_stock_default_threshold: int = Field(default=5, ge=0)

    # ACCOUNTING
    gl_balance_tolerance: Decimal = Field(default=Decimal("0.01"), ge=0)
    gl_auto_provision_chart: bool = True

    # HOOKS
    hooks_enabled: bool = True
    hook_queue_max_size: int = Field(default=1000, ge=1)
    stock_sync_target_app_key: str = "omnichannel"
    reorder_target_app_key: str = "automation"

    @field_validator("default_stock_state", mode="before")
    @classmethod
    def normalize_state(cls, value: str) -> str:
        cleaned = str(value or "").strip().lower()
        if not cleaned:
            raise ValueError("DEFAULT_STOCK_STATE cannot be empty")
        return cleaned

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        env_value = self.env.lower().strip()
        if env_value not in {"prod", "production"}:
            return self

        if self.database_url.lower().startswith("sqlite"):
            raise ValueError("DATABASE_URL must point at a networked database in production")
        if self.gl_balance_tolerance > Decimal("0.01"):
            raise ValueError("GL_BALANCE_TOLERANCE cannot exceed one cent in production")

        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
