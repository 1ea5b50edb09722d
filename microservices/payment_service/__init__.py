"""
Payment Service

Card payments for dropship orders over the Hyp Pay gateway.

Features:
- J5 credit holds at checkout
- Scheduled capture with partial capture and retry/backoff
- Distributed per-order charge locks across instances
- Item refunds capped at the charged amount
"""

__version__ = "1.0.0"
