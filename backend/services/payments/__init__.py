"""
Payment coordination service.

This module handles:
    - Opening payment attempts for the agreed value
    - Synchronous (card / wallet) and asynchronous (instant transfer) confirmation
    - Gateway pushes (webhook) and bounded status polling
"""

from .coordinator import (
    begin_payment,
    payment_returned,
    confirm_payment,
    mark_payment_failed,
    handle_gateway_event,
)
from .gateway import StripeGateway, get_gateway

__all__ = [
    "begin_payment",
    "payment_returned",
    "confirm_payment",
    "mark_payment_failed",
    "handle_gateway_event",
    "StripeGateway",
    "get_gateway",
]
