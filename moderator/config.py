"""
Configuration settings for the comment moderation core.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    
    app_name: str = "Comment Moderator"
    app_version: str = "0.1.0"
    debug: bool = False  # Echo SQL statements
    
    # Database
    database_url: str = "sqlite+aiosqlite:///./moderator.db"
    sqlite_busy_timeout: float = 30.0  # Seconds a writer waits for the lock
    
    # Decision ledger
    decision_max_retries: int = 3  # Retries of a write unit after a lost race
    
    # Logging
    log_level: str = "INFO"
    
    class Config:
        env_file = ".env"
        env_prefix = "MODERATOR_"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
