"""Application Settings - Central Configuration"""
from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )
    
    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "stepflow_dev"
    mongo_use_transactions: bool = False  # Requires a replica set
    
    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"
    
    # CORS - set to "*" to allow all origins
    cors_origins: str = "*"
    
    # Engine
    instance_lock_timeout_seconds: float = 10.0
    max_auto_route_hops: int = 25
    
    # Comma separated user ids that bypass node permission checks
    superuser_ids: str = ""
    
    # Environment
    environment: str = "development"
    debug: bool = True
    
    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins string to list"""
        return [origin.strip() for origin in self.cors_origins.split(",")]
    
    @property
    def superuser_ids_list(self) -> List[str]:
        """Parse superuser ids string to list"""
        return [uid.strip() for uid in self.superuser_ids.split(",") if uid.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
