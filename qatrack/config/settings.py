from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "QA Tracker"
    DEBUG: bool = False

    # Paths
    BASE_DIR: str = "."
    SQLITE_DB_PATH: str = "data/qatrack.db"

    # Sessions
    SESSION_SECRET: str  # Required: the process refuses to boot without it
    SESSION_ALGORITHM: str = "HS256"
    SESSION_TTL_MINUTES: int = 720

    # Credentials
    BCRYPT_ROUNDS: int = 12
    BOOTSTRAP_ADMIN_USERNAME: str | None = None
    BOOTSTRAP_ADMIN_PASSWORD: str | None = None

    # Two-factor
    TWO_FACTOR_CODE_TTL_SECONDS: int = 300
    SMS_GATEWAY_URL: str | None = None
    SMS_GATEWAY_API_KEY: str | None = None
    SMS_SENDER_ID: str = "QATracker"

    # Infrastructure
    SEQ_URL: str | None = None
    SEQ_API_KEY: str | None = None

    model_config = SettingsConfigDict(env_file="secrets/.env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()
