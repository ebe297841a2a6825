"""Environment driven settings for the TourDesk back office."""
from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent

load_dotenv(dotenv_path=BASE_DIR.parent / ".env")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./tourdesk.db")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "THB")
DEFAULT_TAX_PERCENTAGE = Decimal(os.getenv("DEFAULT_TAX_PERCENTAGE", "7"))

# Calendar "today" is evaluated in the operator's zone, not the server's.
OPERATOR_TIMEZONE = os.getenv("OPERATOR_TIMEZONE", "Asia/Bangkok")

EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "noreply@tourdesk.app")

MEDIA_ROOT = Path(os.getenv("MEDIA_ROOT", str(BASE_DIR / "media_storage")))
