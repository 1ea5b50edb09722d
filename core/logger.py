"""
Service logger setup

Configures the stdlib root logger from LoggingConfig and returns a named
logger for the calling service. Modules keep using
``logging.getLogger(__name__)``; this only wires handlers once per process.
"""

import logging
import sys
from typing import Optional

from core.config import LoggingConfig

_configured = False


def setup_service_logger(
    service_name: str,
    level: Optional[str] = None,
    config: Optional[LoggingConfig] = None,
) -> logging.Logger:
    """Configure handlers and return the service logger"""
    global _configured

    config = config or LoggingConfig.from_env()
    log_level = (level or config.log_level).upper()

    if not _configured:
        root = logging.getLogger()
        root.setLevel(log_level)
        formatter = logging.Formatter(config.log_format)

        if config.enable_console:
            console = logging.StreamHandler(sys.stdout)
            console.setFormatter(formatter)
            root.addHandler(console)

        if config.log_file:
            file_handler = logging.FileHandler(config.log_file)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

        for name in config.quiet_loggers:
            logging.getLogger(name).setLevel(logging.WARNING)
        logging.getLogger("microservices.payment_service.clients.hyp_client").setLevel(config.gateway_log_level.upper())
        _configured = True
        root.info(f"Logging configured for {config.environment} at {log_level}")

    logger = logging.getLogger(service_name)
    logger.setLevel(log_level)
    return logger
