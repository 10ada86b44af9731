"""
jobwatch - Application Configuration
Loads environment variables from .env and exposes them as typed settings.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env from the repo root (two levels up from this file)
_ENV_PATH = Path(__file__).parent.parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings:
    # Backend REST API
    API_BASE_URL: str = os.getenv("API_BASE_URL", "http://localhost:8000")
    API_TIMEOUT_S: float = float(os.getenv("API_TIMEOUT_S", "15"))

    # Job watcher
    JOB_POLL_INTERVAL_MS: int = int(os.getenv("JOB_POLL_INTERVAL_MS", "3000"))
    JOB_TIMEOUT_MS: int = int(os.getenv("JOB_TIMEOUT_MS", "120000"))

    # Feature adapters
    SUMMARY_TOAST_DURATION_MS: int = int(os.getenv("SUMMARY_TOAST_DURATION_MS", "10000"))
    REPORT_PHASE_INTERVAL_S: float = float(os.getenv("REPORT_PHASE_INTERVAL_S", "8"))

    # Application
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    SERVICE_NAME: str = os.getenv("SERVICE_NAME", "jobwatch")

    @property
    def is_local(self) -> bool:
        return self.ENVIRONMENT.lower() in ("development", "local", "test")


settings = Settings()
