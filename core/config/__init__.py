#!/usr/bin/env python3
"""Dropship shop configuration

- infra_config: PostgreSQL connection and pool settings
- payment_config: Hyp Pay gateway, charge scheduler, rate limits
- logging_config: log level, handlers, gateway tracing
- shop_config: everything above plus environment and instance identity

The env file under deployment/environments/ is loaded once on import and
never overrides variables already set in the process.
"""
import os
from dotenv import load_dotenv
from .logging_config import LoggingConfig
from .infra_config import InfraConfig
from .payment_config import ChargeSchedulerConfig, HypGatewayConfig, RateLimitConfig
from .shop_config import ShopConfig, default_instance_id

ENV_DIR = "deployment/environments"

_env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
load_dotenv(f"{ENV_DIR}/{'test' if _env in ('testing', 'test') else 'dev'}.env", override=False)

settings = ShopConfig.from_env()


def get_settings() -> ShopConfig:
    return settings


def reload_settings() -> ShopConfig:
    """Re-read the environment, e.g. after a test patches it"""
    global settings
    settings = ShopConfig.from_env()
    return settings


__all__ = [
    'ShopConfig',
    'LoggingConfig',
    'InfraConfig',
    'HypGatewayConfig',
    'ChargeSchedulerConfig',
    'RateLimitConfig',
    'default_instance_id',
    'get_settings',
    'reload_settings',
    'settings',
]
