#!/usr/bin/env python3
"""Payment gateway and charging engine configuration"""
import os
from dataclasses import dataclass
from typing import Optional

def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default

def _float(val: str, default: float) -> float:
    try:
        return float(val) if val else default
    except ValueError:
        return default


@dataclass
class HypGatewayConfig:
    """Hyp Pay terminal credentials"""
    api_url: str = "https://pay.hyp.co.il/p/"
    masof: Optional[str] = None
    passp: Optional[str] = None
    timeout: float = 30.0
    test_mode: bool = False

    @property
    def is_configured(self) -> bool:
        return bool(self.masof and self.passp)

    @classmethod
    def from_env(cls) -> 'HypGatewayConfig':
        return cls(
            api_url=os.getenv("HYP_API_URL", "https://pay.hyp.co.il/p/"),
            masof=os.getenv("HYP_MASOF"),
            passp=os.getenv("HYP_PASSP"),
            timeout=_float(os.getenv("HYP_TIMEOUT", "30"), 30.0),
            test_mode=_bool(os.getenv("HYP_TEST_MODE", "false")),
        )


@dataclass
class ChargeSchedulerConfig:
    """Periodic capture job settings"""
    enabled: bool = True
    interval_minutes: int = 10
    batch_size: int = 10
    inter_order_delay: float = 2.0
    lock_ttl_seconds: int = 60
    lock_sweep_seconds: int = 60
    max_retries: int = 3
    backoff_base_minutes: int = 5

    @classmethod
    def from_env(cls) -> 'ChargeSchedulerConfig':
        return cls(
            enabled=_bool(os.getenv("CHARGE_SCHEDULER_ENABLED", "true")),
            interval_minutes=_int(os.getenv("CHARGE_INTERVAL_MINUTES", "10"), 10),
            batch_size=_int(os.getenv("CHARGE_BATCH_SIZE", "10"), 10),
            inter_order_delay=_float(os.getenv("CHARGE_DELAY_SECONDS", "2"), 2.0),
            lock_ttl_seconds=_int(os.getenv("CHARGE_LOCK_TTL", "60"), 60),
            lock_sweep_seconds=_int(os.getenv("LOCK_SWEEP_SECONDS", "60"), 60),
            max_retries=_int(os.getenv("PAYMENT_MAX_RETRIES", "3"), 3),
            backoff_base_minutes=_int(os.getenv("PAYMENT_BACKOFF_MINUTES", "5"), 5),
        )


@dataclass
class RateLimitConfig:
    """Fixed-window request limits"""
    payment_limit: int = 5
    payment_window_seconds: int = 15 * 60
    refund_limit: int = 10
    refund_window_seconds: int = 60 * 60
    cache_ttl_seconds: int = 300
    cache_sweep_seconds: int = 60

    @classmethod
    def from_env(cls) -> 'RateLimitConfig':
        return cls(
            payment_limit=_int(os.getenv("PAYMENT_RATE_LIMIT", "5"), 5),
            payment_window_seconds=_int(os.getenv("PAYMENT_RATE_WINDOW", "900"), 900),
            refund_limit=_int(os.getenv("REFUND_RATE_LIMIT", "10"), 10),
            refund_window_seconds=_int(os.getenv("REFUND_RATE_WINDOW", "3600"), 3600),
            cache_ttl_seconds=_int(os.getenv("CACHE_TTL_SECONDS", "300"), 300),
            cache_sweep_seconds=_int(os.getenv("CACHE_SWEEP_SECONDS", "60"), 60),
        )
