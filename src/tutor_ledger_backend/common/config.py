'''
Holds all the configurations
'''
from decimal import Decimal
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    """
    Manages application configuration using environment variables.
    """
    # Application Metadata
    APP_NAME: str = "Tutor Ledger Backend"
    APP_VERSION: str = "1.0.0"
    APP_DESCRIPTION: str = "Hour-balance ledger and invoice billing engine for the tutoring back office."
    TEST_MODE: bool = False
    LOG_LEVEL: str = "INFO"

    # Database URL
    DATABASE_URL_PROD: str = "postgresql+asyncpg://localhost/tutor_ledger"
    DATABASE_URL_TEST: str = "sqlite+aiosqlite://"
    AUTO_CREATE_TABLES: bool = False
    @property
    def database_url(self) -> str:
        """
        Dynamically returns the correct database URL based on the test_mode flag.
        """
        if self.TEST_MODE:
            return self.DATABASE_URL_TEST
        return self.DATABASE_URL_PROD

    # JWT Settings
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    BACKEND_CORS_ORIGINS: list[str] = []

    # Billing defaults (used when a guardian has no override)
    DEFAULT_HOURLY_RATE: Decimal = Decimal("10")
    DEFAULT_TRANSFER_FEE_MODE: str = "fixed"
    DEFAULT_TRANSFER_FEE_VALUE: Decimal = Decimal("0")
    INVOICE_DUE_DAYS: int = 7

    # Ledger
    HOURS_EPSILON: Decimal = Decimal("0.001")
    AUDIT_UNDO_WINDOW_HOURS: int = 72
    AGGREGATION_TIMEOUT_SECONDS: float = 10.0

    # Notification outbox
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0
    NOTIFICATION_MAX_ATTEMPTS: int = 5
    NOTIFICATION_POLL_INTERVAL_SECONDS: float = 1.0

    class Config:
        env_file = ".env" # automatically loads the .env

# Create a single, importable instance of the settings
settings = Settings()
