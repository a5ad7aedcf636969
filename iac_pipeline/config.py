"""
Configuration management for the IaC pipeline service.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Application
    app_name: str = Field(default="IaC Pipeline", env="APP_NAME")
    debug: bool = Field(default=False, env="DEBUG")
    environment: str = Field(default="development", env="ENVIRONMENT")

    # API
    api_host: str = Field(default="0.0.0.0", env="API_HOST")
    api_port: int = Field(default=8000, env="API_PORT")
    api_workers: int = Field(default=1, env="API_WORKERS")

    # Database
    database_url: str = Field(default="sqlite:///./iac_pipeline.db", env="DATABASE_URL")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: str = Field(default="json", env="LOG_FORMAT")

    # Triggers
    webhook_secret: Optional[str] = Field(
        default=None,
        env="WEBHOOK_SECRET",
        description="Shared HMAC secret for source-control webhooks. Unset = reject all deliveries.",
    )

    # Pipeline
    pipeline_config_path: str = Field(default="pipeline.yml", env="PIPELINE_CONFIG_PATH")
    git_mirror_root: str = Field(default="./.mirrors", env="GIT_MIRROR_ROOT")
    max_concurrent_executions: int = Field(default=4, env="MAX_CONCURRENT_EXECUTIONS")

    # Status reporting
    status_api_url: str = Field(default="https://api.github.com", env="STATUS_API_URL")
    status_api_token: Optional[str] = Field(default=None, env="STATUS_API_TOKEN")
    status_context: str = Field(default="iac-pipeline", env="STATUS_CONTEXT")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings."""
    return settings
