# cashpath/settings.py
import logging
import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
project_root = Path(__file__).parent.parent
load_dotenv(project_root / ".env")


class Settings:
    def __init__(self):
        self.DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./cashpath.db")
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

        self.OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
        self.MILESTONE_MODEL = os.getenv("MILESTONE_MODEL", "gpt-4o-mini")

        # Job runtime for recurring transactions
        self.RECURRING_CONCURRENCY = int(os.getenv("RECURRING_CONCURRENCY", "10"))
        self.RECURRING_RETRIES = int(os.getenv("RECURRING_RETRIES", "3"))

        # /admin routes answer only to this X-Admin-Token; unset disables them
        self.ADMIN_TOKEN = os.getenv("ADMIN_TOKEN")


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str | None = None):
    logging.basicConfig(
        level=(level or get_settings().LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
