from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

BARB_BASE_URL = "https://barb-api.co.uk/api/v1"
DEFAULT_ORGANIZATION_ID = "16bb4799-c3b2-44c9-87a0-1d253bc83c15"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw else default


@dataclass
class Config:
    barb_email: Optional[str] = None
    barb_password: Optional[str] = None
    barb_base_url: str = BARB_BASE_URL
    db_path: str = "data.db"
    cpm: float = 24.0
    page_size: int = 100
    db_page_size: int = 1000
    max_pages: int = 500
    max_rows: int = 500_000
    max_retries: int = 3
    http_timeout: int = 30
    organization_id: str = DEFAULT_ORGANIZATION_ID
    log_level: str = "INFO"

    @staticmethod
    def from_env(env_file: Optional[str] = None) -> "Config":
        load_dotenv(env_file)
        email = os.getenv("BARB_EMAIL")
        password = os.getenv("BARB_PASSWORD")
        return Config(
            barb_email=email.strip() if email else None,
            barb_password=password if password else None,
            barb_base_url=os.getenv("BARB_BASE_URL") or BARB_BASE_URL,
            db_path=os.getenv("DB_PATH") or "data.db",
            cpm=_env_float("CPM", 24.0),
            page_size=_env_int("PAGE_SIZE", 100),
            db_page_size=_env_int("DB_PAGE_SIZE", 1000),
            max_pages=_env_int("MAX_PAGES", 500),
            max_rows=_env_int("MAX_ROWS", 500_000),
            max_retries=_env_int("MAX_RETRIES", 3),
            http_timeout=_env_int("HTTP_TIMEOUT", 30),
            organization_id=os.getenv("ORGANIZATION_ID") or DEFAULT_ORGANIZATION_ID,
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        )
