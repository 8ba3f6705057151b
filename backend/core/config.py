"""
Application configuration.

Every tunable of the rental core is read from the environment with the
``RENTALHUB_`` prefix. Secrets (the encryption key) MUST be overridden
outside of development.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Dict

from pydantic import field_validator
from pydantic_settings import BaseSettings

DEV_ENCRYPTION_KEY = "8f2a4c6e0b1d3f5a7c9e1b3d5f7a9c0e2b4d6f8a0c2e4b6d8f0a2c4e6b8d0f2a"


class Settings(BaseSettings):
    """Settings for the rental marketplace core."""

    # Database
    database_url: str = "sqlite:///./rentalhub.db"
    log_sql_queries: bool = False
    slow_query_threshold_seconds: float = 1.0
    db_pool_size: int = 10
    db_max_overflow: int = 20

    # Fees. Percent of the rental amount, used until an admin stores a rate.
    default_service_fee_rate: Decimal = Decimal("5")

    # AES-256 key, hex encoded. Process wide, never derived per record.
    encryption_key: str = DEV_ENCRYPTION_KEY

    # Calendar used for "one claim per day" rules
    business_timezone: str = "Asia/Ho_Chi_Minh"

    # Loyalty
    daily_login_points: int = 10
    order_points_divisor: int = 10000
    points_discount_tiers: Dict[int, int] = {5000: 5, 10000: 10, 20000: 20}
    points_discount_validity_months: int = 1
    loyalty_code_length: int = 8
    loyalty_code_max_attempts: int = 10

    # Discounts
    discount_code_length: int = 10
    discount_code_max_attempts: int = 5

    # Signatures and stored assets
    signature_validity_days: int = 365
    asset_bucket_name: str = "rentalhub-assets"
    aws_region: str = "us-east-1"
    max_asset_size_bytes: int = 5 * 1024 * 1024

    # Pagination
    default_page_size: int = 20
    max_page_size: int = 100

    class Config:
        env_prefix = "RENTALHUB_"
        case_sensitive = False

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, v: str) -> str:
        try:
            raw = bytes.fromhex(v)
        except ValueError:
            raise ValueError("encryption_key must be hex encoded")
        if len(raw) != 32:
            raise ValueError("encryption_key must decode to 32 bytes (AES-256)")
        return v

    @field_validator("default_service_fee_rate")
    @classmethod
    def validate_service_fee_rate(cls, v: Decimal) -> Decimal:
        if v < 0 or v > 100:
            raise ValueError("default_service_fee_rate must be between 0 and 100")
        return v

    @field_validator("points_discount_tiers")
    @classmethod
    def validate_tiers(cls, v: Dict[int, int]) -> Dict[int, int]:
        for points, percent in v.items():
            if points <= 0 or not 0 < percent <= 100:
                raise ValueError(f"Invalid loyalty tier {points} -> {percent}%")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()


settings = get_settings()
