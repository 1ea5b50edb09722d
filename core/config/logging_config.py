#!/usr/bin/env python3
"""Logging configuration"""
import os
from dataclasses import dataclass, field
from typing import Tuple

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _bool(val: str) -> bool:
    return val.lower() in ("1", "true", "yes")


@dataclass
class LoggingConfig:
    """Logging configuration"""
    log_level: str = "INFO"
    log_format: str = DEFAULT_FORMAT
    log_file: str = ""
    enable_console: bool = True
    environment: str = "development"

    # Hyp Pay request tracing; card fields are never logged
    gateway_log_level: str = "INFO"

    # Chatty third-party loggers held at WARNING
    quiet_loggers: Tuple[str, ...] = field(default_factory=lambda: ("httpx", "httpcore", "apscheduler", "asyncpg"))

    @classmethod
    def from_env(cls) -> 'LoggingConfig':
        """Load logging config from environment variables"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        quiet = os.getenv("LOG_QUIET")
        return cls(
            log_level=os.getenv("LOG_LEVEL", "DEBUG" if env == "development" else "INFO"),
            log_format=os.getenv("LOG_FORMAT", DEFAULT_FORMAT),
            log_file=os.getenv("LOG_FILE", ""),
            enable_console=_bool(os.getenv("LOG_CONSOLE", "true")),
            environment=env,
            gateway_log_level="DEBUG" if _bool(os.getenv("HYP_TEST_MODE", "false")) else "INFO",
            **({"quiet_loggers": tuple(n.strip() for n in quiet.split(",") if n.strip())} if quiet else {}),
        )
