from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./loyalty.db"
    database_echo: bool = False
    tracing_enabled: bool = True

    # Internal API security (payment webhook, signup flow)
    checkout_api_key: str = ""

    # Tier progression
    loyalty_tier_thresholds: dict[str, int] = Field(
        default_factory=lambda: {"bronze": 0, "silver": 100, "gold": 500, "vip": 2000}
    )

    # Earning rules
    loyalty_points_per_currency_unit: int = 1
    loyalty_min_purchase_points: int = 10
    loyalty_referral_reward_points: int = 500
    loyalty_birthday_bonus_points: int = 50

    # Redemption (points -> discount value in cents)
    loyalty_redemption_table: dict[int, int] = Field(
        default_factory=lambda: {250: 500, 500: 1100, 1000: 2500}
    )
    loyalty_discount_valid_days: int = 30
    loyalty_discount_code_prefix: str = "REWARD"

    # Referral codes
    referral_code_length: int = 10
    referral_code_max_attempts: int = 3
    referral_link_base_url: str = ""

    @field_validator("loyalty_tier_thresholds", mode="before")
    @classmethod
    def _normalize_thresholds(cls, value: object) -> object:
        if isinstance(value, dict):
            return {str(key).strip().lower(): value[key] for key in value}
        return value

    @field_validator("loyalty_redemption_table")
    @classmethod
    def _validate_redemption_table(cls, value: dict[int, int]) -> dict[int, int]:
        for points, cents in value.items():
            if points <= 0 or cents <= 0:
                raise ValueError("Redemption table entries must be positive")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]
