from pydantic import Field
from pydantic_settings import BaseSettings

NINETY_DAYS_SECONDS = 60 * 60 * 24 * 90


class Settings(BaseSettings):
    """Application settings"""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./tokenvault.db"

    # Encryption key material (hex or urlsafe base64)
    ENCRYPTION_MASTER_KEY: str | None = None
    ENCRYPTION_SALT: str | None = None
    ENCRYPTION_KEY_ID: str = "default"
    # Retired keys that must still decrypt: {"key-id": "<master key>"}
    ENCRYPTION_PREVIOUS_KEYS: dict[str, str] = {}
    # Local development only: generate a throwaway key when none is configured
    ALLOW_EPHEMERAL_KEY: bool = False

    # Rotation policy
    ROTATION_MAX_AGE_SECONDS: int = Field(default=NINETY_DAYS_SECONDS, gt=0)
    ROTATION_THRESHOLD_PERCENT: float = Field(default=20, ge=0, le=100)
    AUTO_ROTATE_ENABLED: bool = True

    # I/O bounds
    STORE_TIMEOUT_SECONDS: float = Field(default=5.0, gt=0)
    REFRESH_TIMEOUT_SECONDS: float = Field(default=15.0, gt=0)

    # Bearer token -> user id
    API_TOKENS: dict[str, str] = {}

    # Platform OAuth apps
    FACEBOOK_APP_ID: str | None = None
    FACEBOOK_APP_SECRET: str | None = None
    FACEBOOK_GRAPH_VERSION: str = "v18.0"
    LINKEDIN_CLIENT_ID: str | None = None
    LINKEDIN_CLIENT_SECRET: str | None = None

    # API
    PROJECT_NAME: str = "Token Vault API"
    API_PREFIX: str = "/api"
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
