"""
Price negotiation service.

This module handles:
    - Alternating price proposals between client and provider
    - Accepting a proposal (freezes the agreed value)
    - Confirming the agreed value and moving on to payment
    - The request chat
"""

from .protocol import (
    NegotiationState,
    get_negotiation_state,
    parse_value,
    propose,
    accept_value,
    confirm_and_proceed,
    set_direct_payment,
    send_chat_message,
    list_chat_messages,
)

__all__ = [
    "NegotiationState",
    "get_negotiation_state",
    "parse_value",
    "propose",
    "accept_value",
    "confirm_and_proceed",
    "set_direct_payment",
    "send_chat_message",
    "list_chat_messages",
]
