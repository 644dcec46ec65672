import os
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "5001"))
    cors_origins: List[str] = field(
        default_factory=lambda: os.getenv(
            "CORS_ORIGINS", "http://localhost:5173,http://localhost:5174"
        ).split(",")
    )

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "smart_library.db")
    database_busy_timeout: float = float(os.getenv("DATABASE_BUSY_TIMEOUT", "5"))
    transaction_retries: int = int(os.getenv("TRANSACTION_RETRIES", "3"))
    transaction_backoff: float = float(os.getenv("TRANSACTION_BACKOFF", "0.05"))

    # Security settings
    jwt_secret_key: str = os.getenv("JWT_SECRET_KEY", "your-secret-key-change-this-in-production")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_expiration_minutes: int = int(os.getenv("JWT_EXPIRATION_MINUTES", "10080"))  # 7 days
    bcrypt_rounds: int = int(os.getenv("BCRYPT_ROUNDS", "10"))

    # Circulation rules
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "7"))
    unit_penalty: int = int(os.getenv("UNIT_PENALTY", "5"))  # per day overdue
    due_soon_days: int = int(os.getenv("DUE_SOON_DAYS", "3"))

    # Hugging Face API settings
    hugging_face_api_key: Optional[str] = os.getenv("HUGGING_FACE_API_KEY")
    hugging_face_model: str = os.getenv("HUGGING_FACE_MODEL", "facebook/bart-large-cnn")
    hugging_face_timeout: float = float(os.getenv("HUGGING_FACE_TIMEOUT", "15"))
    enable_ai_features: bool = _env_flag("ENABLE_AI_FEATURES", "True")

    # Google Books API settings
    google_books_api_key: Optional[str] = os.getenv("GOOGLE_BOOKS_API_KEY")
    google_books_timeout: float = float(os.getenv("GOOGLE_BOOKS_TIMEOUT", "10"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Smart Library")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG", "False")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
