"""
Application settings — read from the environment (or ``.env``).
"""
from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./data/confirmit.db"
    SQL_ECHO: bool = False

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Uploaded receipt images
    DATA_DIR: str = "./data"
    UPLOAD_DIR: str = "./data/uploads"
    PUBLIC_BASE_URL: str = "http://localhost:8080"
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024
    ALLOWED_CONTENT_TYPES: List[str] = [
        "image/jpeg",
        "image/png",
        "image/webp",
        "image/heic",
        "application/pdf",
    ]

    # Forensic / OCR analyzer
    ANALYZER_URL: str = "http://localhost:8000"
    ANALYZER_TIMEOUT_SECONDS: float = 180.0

    # Ledger anchoring (empty URL disables anchoring)
    LEDGER_URL: str = ""
    LEDGER_API_KEY: str = ""
    LEDGER_NETWORK: str = "testnet"
    LEDGER_TOPIC_ID: str = ""
    LEDGER_TIMEOUT_SECONDS: float = 30.0

    # Result storage
    MAX_SUMMARY_BYTES: int = 1024 * 1024
    SUMMARY_EXCERPT_LIMIT: int = 5

    # How long shutdown waits for running analyses
    SHUTDOWN_GRACE_SECONDS: float = 10.0

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
