import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    db_file: Optional[str] = os.getenv("LIBRARY_DB_FILE")
    database_timeout: float = float(os.getenv("DATABASE_TIMEOUT", "5"))

    # Circulation policy
    fine_rate: Decimal = Decimal(os.getenv("FINE_RATE", "0.50"))  # per overdue day
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))
    renewal_days: int = int(os.getenv("RENEWAL_DAYS", "14"))
    max_renewals: int = int(os.getenv("MAX_RENEWALS", "2"))

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Circulation Desk")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
