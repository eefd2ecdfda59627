# affiliate_engine/core/config.py
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional, Dict, Any
from pydantic import field_validator
import logging

logger = logging.getLogger(__name__)

class Settings(BaseSettings):
    # Base Settings
    PROJECT_NAME: str = "Affiliate Engine"
    ENVIRONMENT: str = "development"

    # Frontend used to build Stripe Connect onboarding links
    FRONTEND_URL: str = "http://localhost:3000"
    DEV_FRONTEND_URL: str = "http://localhost:3000"
    PROD_FRONTEND_URL: str = ""

    # Database Settings
    DATABASE_URL: str = "sqlite:///./affiliate_engine.db"
    DEV_DATABASE_URL: str = ""
    PROD_DATABASE_URL: str = ""
    SQL_ECHO: bool = False

    # Database pool settings
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800  # 30 minutes
    DB_POOL_PRE_PING: bool = True

    LOG_LEVEL: str = "INFO"

    # Stripe (transfers and Connect onboarding)
    STRIPE_SECRET_KEY: Optional[str] = None

    # Affiliate program
    AFFILIATE_TERMS_VERSION: str = "2026-02-21"
    AFFILIATE_DEFAULT_LEVEL_ONE_RATE_BPS: int = 2000
    AFFILIATE_DEFAULT_LEVEL_TWO_RATE_BPS: int = 500
    AFFILIATE_COMMISSION_LOCK_DAYS: int = 30
    AFFILIATE_PAYOUT_INTERVAL_SECONDS: int = 3600
    AFFILIATE_CONNECT_RETURN_PATH: str = "/settings?tab=affiliate"

    @field_validator("STRIPE_SECRET_KEY")
    @classmethod
    def validate_stripe_secret_key(cls, v):
        if v and not v.startswith(("sk_", "rk_")):
            raise ValueError("Invalid Stripe secret key format")
        return v

    @field_validator("AFFILIATE_DEFAULT_LEVEL_ONE_RATE_BPS")
    @classmethod
    def validate_level_one_rate(cls, v):
        if v < 0 or v > 5000:
            raise ValueError("AFFILIATE_DEFAULT_LEVEL_ONE_RATE_BPS must be in range 0..5000")
        return v

    @field_validator("AFFILIATE_DEFAULT_LEVEL_TWO_RATE_BPS")
    @classmethod
    def validate_level_two_rate(cls, v):
        if v < 0 or v > 2000:
            raise ValueError("AFFILIATE_DEFAULT_LEVEL_TWO_RATE_BPS must be in range 0..2000")
        return v

    @property
    def active_database_url(self) -> str:
        """Get the database URL for the current environment"""
        if self.ENVIRONMENT == "production" and self.PROD_DATABASE_URL:
            return self.PROD_DATABASE_URL
        elif self.ENVIRONMENT == "development" and self.DEV_DATABASE_URL:
            return self.DEV_DATABASE_URL
        return self.DATABASE_URL

    @property
    def active_frontend_url(self) -> str:
        if self.ENVIRONMENT == "production" and self.PROD_FRONTEND_URL:
            return self.PROD_FRONTEND_URL
        elif self.ENVIRONMENT == "development" and self.DEV_FRONTEND_URL:
            return self.DEV_FRONTEND_URL
        return self.FRONTEND_URL

    def get_db_params(self) -> Dict[str, Any]:
        """Return engine keyword arguments for the active database"""
        if self.active_database_url.startswith("sqlite"):
            # SQLite has no server-side pool to tune
            return {
                "connect_args": {"check_same_thread": False},
                "echo": self.SQL_ECHO,
            }
        return {
            "pool_size": self.DB_POOL_SIZE,
            "max_overflow": self.DB_MAX_OVERFLOW,
            "pool_timeout": self.DB_POOL_TIMEOUT,
            "pool_recycle": self.DB_POOL_RECYCLE,
            "pool_pre_ping": self.DB_POOL_PRE_PING,
            "echo": self.SQL_ECHO,
        }

    class Config:
        env_file = ".env"
        case_sensitive = True
        env_file_encoding = 'utf-8'
        extra = "ignore"

@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

# Create settings instance
settings = get_settings()
