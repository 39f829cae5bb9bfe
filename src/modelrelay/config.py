"""Configuration settings for the application."""

from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical
    CORS_ORIGINS: List[str] = ["http://localhost:8080"]

    # Backend routing
    BACKENDS: List[str] = ["openai", "anthropic", "local"]  # priority order
    DEFAULT_BACKEND: str = "openai"  # backend that serves model="" / "default"
    SYSTEM_PROMPT: str = ""

    # Remote providers
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str | None = None
    OPENAI_MODEL: str = "gpt-4o-mini"
    ANTHROPIC_API_KEY: str | None = None
    ANTHROPIC_MODEL: str = "claude-3-5-haiku-latest"
    REMOTE_CONTEXT_LENGTH: int = 128_000

    # Local weights
    LOCAL_MODEL_PATH: str | None = None
    LOCAL_RUNTIME_URL: str = "http://localhost:8080"
    LOCAL_REQUEST_TIMEOUT: float = 120.0
    MODEL_SCAN_TTL: float = 5.0  # seconds before the model directory is re-scanned
    MODEL_CONCURRENCY: int = 1  # concurrent generations per loaded model

    # Generation & context budget
    DEFAULT_MAX_TOKENS: int = 16_384
    RESPONSE_TOKEN_RESERVE: int = 4096
    MIN_HISTORY_TOKENS: int = 2048
    CONTEXT_LENGTH: int = 8192
    MAX_TOOL_ATTEMPTS: int = 15

    # Capabilities
    TWO_PHASE_CAPABILITIES: bool = True
    SKILLS_DIR: str | None = None

    # Stream flushing caps
    FLUSH_MAX_INTERVAL_MS: float = 500.0
    FLUSH_MAX_BUFFER: int = 4096

    class Config:
        """Configuration for Pydantic settings."""

        # Load environment variables from a .env file
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
