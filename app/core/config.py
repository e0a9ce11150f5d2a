from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional, List, Union


class Settings(BaseSettings):
    # Database
    database_url: str
    database_connect_timeout: int = 5

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    redis_password: Optional[str] = None

    # Firebase
    firebase_project_id: str
    firebase_credentials_path: str

    # API
    api_v1_str: str = "/api/v1"

    # Environment
    environment: str = "development"
    debug: bool = True

    # Subscriptions
    free_assignment_limit: int = 4
    trial_days: int = 14
    subscription_cache_ttl_minutes: int = 5

    # Rate limiting
    rate_limit_enabled: bool = True

    # PayPal
    paypal_client_id: Optional[str] = None
    paypal_secret: Optional[str] = None
    paypal_api_base: str = "https://api-m.sandbox.paypal.com"
    paypal_webhook_id: Optional[str] = None
    paypal_basic_plan_id: Optional[str] = None
    paypal_pro_plan_id: Optional[str] = None
    paypal_timeout_seconds: float = 15.0

    # CORS
    cors_origins: List[str] = ["http://localhost:3000"]

    @field_validator('cors_origins', mode='before')
    @classmethod
    def parse_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        """Parse CORS origins from environment variable (comma-separated) or use default list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Allow extra fields from environment


settings = Settings()
