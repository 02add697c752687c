from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "local"
    APP_NAME: str = "CourtFlow Reservation API"
    # Comma-separated origins for CORS (e.g. https://courts.example.vn). If empty, uses localhost defaults.
    CORS_ORIGINS: str = ""
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = ""  # empty = console only

    SECRET_KEY: str
    SESSION_COOKIE_NAME: str = "courtflow_session"
    SESSION_TOKEN_EXPIRE_HOURS: int = 12

    DATABASE_URL: str

    @field_validator("DATABASE_URL", mode="after")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """Render and others give postgres://; SQLAlchemy expects postgresql+psycopg2://."""
        if v and v.startswith("postgres://"):
            return "postgresql+psycopg2://" + v[11:]
        return v
    REDIS_URL: str = "redis://localhost:6379/0"

    # Backend booking API (holds, bookings, provider checkout/status)
    BACKEND_API_URL: str = "http://localhost:8080"
    BACKEND_API_TOKEN: str = ""
    BACKEND_TIMEOUT: int = 15

    @field_validator("BACKEND_API_URL", "CLIENT_BASE_URL", mode="after")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return (v or "").rstrip("/")

    CLIENT_BASE_URL: str = "http://localhost:5173"  # where the booking pages live

    # Reservation flow
    HOLD_MINUTES: int = 5
    VISIBILITY_GRACE_SECONDS: float = 3.0
    OFFLINE_PAYMENT_METHODS: str = "pay_at_venue,cash,banking"
    # In-process flow state (guard, redirect flag) of a session unseen this long is dropped
    FLOW_RUNTIME_IDLE_SECONDS: int = 1800

    # PayOS
    PAYOS_CHECKSUM_KEY: str = ""
    # Legacy behaviour: trust an unsigned PayOS return code when the backend cannot confirm.
    PAYOS_ALLOW_UNSIGNED_RETURN: bool = False

    # VNPay
    VNPAY_TMN_CODE: str = ""
    VNPAY_HASH_SECRET: str = ""


settings = Settings()
