from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Filesystem
    work_dir: str = os.getenv("BISKET_WORK_DIR", ".bisket")
    db_path: str = os.getenv("BISKET_DB_PATH", "bisket.db")

    # Loops and timeouts
    poll_interval_s: int = _env_int("BISKET_POLL_INTERVAL_S", 30)
    gateway_timeout_s: int = _env_int("BISKET_GATEWAY_TIMEOUT_S", 30)

    # Listeners / logging
    bind_host: str = os.getenv("BISKET_BIND_HOST", "0.0.0.0")
    log_level: str = os.getenv("BISKET_LOG_LEVEL", "INFO").upper()


settings = Settings()
