"""
Application settings using Pydantic.

Provides environment-based configuration loading with VGARDEN_ prefix.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Hosting cluster
    namespace: str = "garden"
    handle_namespace: bool = False
    kubeconfig: str | None = None
    kube_context: str | None = None

    # Imports file describing the virtual garden
    imports_path: str = "imports.yaml"

    # Executor
    max_concurrency: int | None = None

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json, console

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "VGARDEN_"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
