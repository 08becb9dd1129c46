from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_NAME: str = "Retail Back Office"
    DATABASE_URL: str = "sqlite:///./backoffice.db"

    SECRET_KEY: str = "change-me"
    ACCESS_TOKEN_EXPIRE_HOURS: int = 72

    LOG_LEVEL: str = "INFO"

    # Approval requests without an explicit expiry in their rule (7 days)
    DEFAULT_APPROVAL_EXPIRY_HOURS: float = 168
    # Background expiry sweep; 0 disables the loop
    APPROVAL_SWEEP_INTERVAL_SECONDS: int = 300

    # Attempts at creating the first counter row of a day under contention
    SEQUENCE_MAX_RETRIES: int = 3

    # Approval resolution callbacks (comma-separated)
    WEBHOOK_URLS: str = ""
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0

    model_config = {"env_file": ".env"}


settings = Settings()
