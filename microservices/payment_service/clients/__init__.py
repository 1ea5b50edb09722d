"""
Payment Service Clients

External gateway adapters used by the payment service
"""

from .hyp_client import HypPayClient, validate_card_details

__all__ = [
    "HypPayClient",
    "validate_card_details",
]
