import os
from pydantic_settings import BaseSettings
from typing import Optional, List, Dict, Any


class Settings(BaseSettings):

    port: int = 8000
    environment: str = "development"


    postgres_user: str = os.getenv("POSTGRES_USER", "user")
    postgres_password: str = os.getenv("POSTGRES_PASSWORD", "password")
    postgres_db: str = os.getenv("POSTGRES_DB", "proctor_db")
    postgres_host: str = os.getenv("POSTGRES_HOST", "db")
    postgres_port: int = 5432
    database_url_override: Optional[str] = os.getenv("DATABASE_URL")

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return f"postgresql://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"


    cors_origins_str: str = "http://localhost:3000,http://localhost:5173,http://localhost:80,http://frontend:80"

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins_str.split(",")]


    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    cache_default_ttl: int = 600
    cache_key_prefix: str = "proctor:"


    slow_request_threshold: float = 1.0


    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
    celery_result_backend: str = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")

    # Proctoring protocol
    violation_threshold: int = 3
    progress_interval_seconds: float = 30.0
    timer_tick_seconds: float = 1.0
    screen_share_min_width: int = 1024
    screen_share_min_height: int = 768
    external_monitor_margin_px: int = 100
    capability_request_timeout_seconds: float = 60.0
    negotiation_timeout_seconds: float = 30.0
    negotiation_max_attempts: int = 3
    ice_servers: List[Dict[str, Any]] = [{"urls": "stun:stun.l.google.com:19302"}]
    expiry_grace_seconds: int = 120
    expiry_sweep_interval_seconds: float = 60.0
    health_check_interval_seconds: float = 600.0


    api_base_url: str = os.getenv("PROCTOR_API_URL", "http://localhost:8000/api/v1")
    relay_url: str = os.getenv("PROCTOR_RELAY_URL", "http://localhost:8000")
    api_timeout_seconds: float = 10.0


    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
