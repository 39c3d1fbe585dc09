from __future__ import annotations

import os
from datetime import timedelta


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


DB_PATH = os.getenv("SHAREFILE_DB_PATH", "sharefile.db")
UPLOAD_DIR = os.getenv("SHAREFILE_UPLOAD_DIR", "./uploads")
LOG_DIR = os.getenv("SHAREFILE_LOG_DIR", "./logs")
LOG_FILE = "download.log"
LOG_LEVEL = os.getenv("SHAREFILE_LOG_LEVEL", "INFO").upper()

ADMIN_TOKEN = os.getenv("SHAREFILE_ADMIN_TOKEN", "")

MAX_ATTEMPTS = _int_env("SHAREFILE_MAX_ATTEMPTS", 5)
BLOCK_DURATION = timedelta(minutes=_int_env("SHAREFILE_BLOCK_MINUTES", 15))
WINDOW_DURATION = timedelta(minutes=_int_env("SHAREFILE_WINDOW_MINUTES", 15))
SWEEP_INTERVAL_SECONDS = _int_env("SHAREFILE_SWEEP_SECONDS", 60)

PASSWORD_HASH_ITERATIONS = _int_env("SHAREFILE_PASSWORD_HASH_ITERATIONS", 200_000)
PASSWORD_SALT_BYTES = 16

MAX_UPLOAD_BYTES = _int_env("SHAREFILE_MAX_UPLOAD_BYTES", 1024 * 1024 * 1024)
CHUNK_SIZE = 64 * 1024

LOG_QUERY_LIMIT = _int_env("SHAREFILE_LOG_QUERY_LIMIT", 100)
STATS_WINDOW_DAYS = 30
DAILY_CHART_DAYS = 7


def get_db_path() -> str:
    return os.getenv("SHAREFILE_DB_PATH", DB_PATH)


def get_upload_dir() -> str:
    return os.getenv("SHAREFILE_UPLOAD_DIR", UPLOAD_DIR)


def get_log_dir() -> str:
    return os.getenv("SHAREFILE_LOG_DIR", LOG_DIR)


def get_admin_token() -> str:
    return os.getenv("SHAREFILE_ADMIN_TOKEN", ADMIN_TOKEN)
