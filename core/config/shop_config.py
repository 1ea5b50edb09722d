#!/usr/bin/env python3
"""Main platform configuration

Combines all sub-configs for the order and payment services.
"""
import os
import socket
import time
from dataclasses import dataclass, field
from typing import Optional

from .infra_config import InfraConfig
from .logging_config import LoggingConfig
from .payment_config import ChargeSchedulerConfig, HypGatewayConfig, RateLimitConfig


def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default


@dataclass
class ShopConfig:
    """Main platform configuration with all sub-configs"""

    # Environment
    environment: str = "development"
    debug: bool = False

    # Process identity used as distributed lock owner
    instance_id: Optional[str] = None

    # Service ports
    default_host: str = "0.0.0.0"
    order_service_port: int = 8210
    payment_service_port: int = 8207

    # Sub-configurations
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    infrastructure: InfraConfig = field(default_factory=InfraConfig)
    gateway: HypGatewayConfig = field(default_factory=HypGatewayConfig)
    scheduler: ChargeSchedulerConfig = field(default_factory=ChargeSchedulerConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)

    @classmethod
    def from_env(cls) -> 'ShopConfig':
        """Load complete configuration from environment"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        return cls(
            environment=env,
            debug=_bool(os.getenv("DEBUG", "true" if env == "development" else "false")),
            instance_id=os.getenv("INSTANCE_ID") or None,
            default_host=os.getenv("HOST", "0.0.0.0"),
            order_service_port=_int(os.getenv("ORDER_SERVICE_PORT", "8210"), 8210),
            payment_service_port=_int(os.getenv("PAYMENT_SERVICE_PORT", "8207"), 8207),
            logging=LoggingConfig.from_env(),
            infrastructure=InfraConfig.from_env(),
            gateway=HypGatewayConfig.from_env(),
            scheduler=ChargeSchedulerConfig.from_env(),
            rate_limits=RateLimitConfig.from_env(),
        )


def default_instance_id() -> str:
    """Hostname, pid and start time; unique enough per running process"""
    return f"{socket.gethostname()}-{os.getpid()}-{int(time.time() * 1000)}"
