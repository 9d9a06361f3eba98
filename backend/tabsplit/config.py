# backend/tabsplit/config.py
from __future__ import annotations

import os


class Config:
    DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD").strip().upper()
    TAX_WARNING_PERCENT = os.getenv("TAX_WARNING_PERCENT", "25").strip()
    TIP_WARNING_PERCENT = os.getenv("TIP_WARNING_PERCENT", "35").strip()
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").strip().upper()
