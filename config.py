import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()

@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    data_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")

    # Circulation defaults, used when the system_config row is first created
    default_max_books_per_student: int = int(os.getenv("DEFAULT_MAX_BOOKS_PER_STUDENT", "3"))
    default_issue_days_limit: int = int(os.getenv("DEFAULT_ISSUE_DAYS_LIMIT", "14"))
    default_fine_per_day: float = float(os.getenv("DEFAULT_FINE_PER_DAY", "5"))

    # Upload settings
    max_upload_size: int = int(os.getenv("MAX_UPLOAD_SIZE", "10485760"))  # 10MB

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Circulation API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
