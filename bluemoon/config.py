from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    project_name: str = "BlueMoon Rewards"
    environment: str = Field(default="dev", pattern="^(dev|test|staging|prod)$")
    public_base_url: str = Field(default="https://bluemoon.ng")
    cors_origins: List[str] = Field(default=["*"])
    # Accounts registered with one of these ids start out as admins
    bootstrap_admins: List[str] = Field(default_factory=list)

    # Logging
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True)

    # Reward policy (whole Naira)
    base_reward: int = Field(default=2000, gt=0)
    boosted_reward: int = Field(default=3000, gt=0)
    boosted_tier_threshold: int = Field(default=5, gt=0)
    milestone_threshold: int = Field(default=10, gt=0)
    milestone_bonus: int = Field(default=10000, ge=0)
    welcome_bonus: int = Field(default=500, ge=0)

    # Payouts
    minimum_payout: int = Field(default=1000, gt=0)

    # Referral codes
    referral_code_prefix: str = Field(default="BM-")
    referral_code_length: int = Field(default=6, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="BLUEMOON_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
