import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "5000"))
    cors_origins: str = os.getenv("CORS_ORIGINS", "*")

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    seed_sample_data: bool = _env_flag("SEED_SAMPLE_DATA")

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))

    # Uploads
    max_upload_size: int = int(os.getenv("MAX_UPLOAD_SIZE", "10485760"))  # 10MB

    # Change notifications
    notifier_queue_size: int = int(os.getenv("NOTIFIER_QUEUE_SIZE", "100"))

    # Application
    app_name: str = os.getenv("APP_NAME", "Library Catalog")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    @property
    def allowed_origins(self) -> list:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


settings = Settings()
