"""
Centralized configuration for the print dispatch service
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _env_int(name, default):
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name, default):
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


class Config:
    """Centralized configuration management"""

    DATABASE_URL = os.getenv("PRINTDISPATCH_DATABASE_URL", "sqlite:///printdispatch.db")
    BRIDGE_URL = os.getenv("PRINTDISPATCH_BRIDGE_URL", "http://localhost:8001")
    LOG_DIR = os.getenv("PRINTDISPATCH_LOG_DIR", "logs")

    # Worker pool
    MAX_CONCURRENT_WORKERS = _env_int("PRINTDISPATCH_MAX_WORKERS", 10)
    MIN_WORKERS = 1
    MAX_WORKERS = 50

    # Timing (seconds)
    TASK_TIMEOUT = _env_float("PRINTDISPATCH_TASK_TIMEOUT", 120.0)
    MIN_TASK_TIMEOUT = 0.5
    CHECK_INTERVAL = _env_float("PRINTDISPATCH_CHECK_INTERVAL", 1.0)
    HEARTBEAT_INTERVAL = _env_float("PRINTDISPATCH_HEARTBEAT_INTERVAL", 5.0)
    STALE_AFTER = _env_float("PRINTDISPATCH_STALE_AFTER", 300.0)
    STALE_CHECK_INTERVAL = 30.0
    # Incremental loads look back this far; rows can commit out of created_at order
    WATERMARK_OVERLAP = 1.0
    OUTCOME_WRITE_ATTEMPTS = 3
    OUTCOME_RETRY_DELAY = 0.2
    BRIDGE_TIMEOUT = 30.0

    # Retries
    DEFAULT_MAX_RETRIES = _env_int("PRINTDISPATCH_DEFAULT_MAX_RETRIES", 3)
    BACKOFF_BASE = 1.0
    BUSY_JITTER = 2.0
    BACKOFF_CAPS = {
        "RESOURCE_BUSY": 5.0,
        "NETWORK_ERROR": 5.0,
        "CONNECTION_FAILED": 5.0,
        "HARDWARE_ERROR": 3.0,
        "UNKNOWN": 5.0,
    }


def clamp_workers(value):
    """Keep the worker ceiling within [MIN_WORKERS, MAX_WORKERS]"""
    return max(Config.MIN_WORKERS, min(int(value), Config.MAX_WORKERS))


def clamp_timeout(value):
    """Per-job timeout never drops below MIN_TASK_TIMEOUT"""
    return max(Config.MIN_TASK_TIMEOUT, float(value))
