"""
Service request management - Core lifecycle operations.

This module handles:
    - Creating requests and retrying a timed-out search
    - Provider engage / decline / withdraw
    - Completion, confirmation, dispute and auto-finish
    - Cancellation by either party or the platform
    - Querying the active request of a client or provider
    - Reviews once a request is finished
"""

from .request_lifecycle import (
    RequestResult,
    create_request,
    engage_provider,
    decline_request,
    begin_negotiation,
    withdraw_provider,
    complete_service,
    confirm_completion,
    dispute_completion,
    auto_finish_request,
    auto_finish_overdue_requests,
    cancel_request,
    system_cancel_request,
    retry_search,
    acknowledge_request,
    get_active_request_for_client,
    get_active_request_for_provider,
    get_current_request_for_client,
    get_request_for_participant,
)
from .reviews import submit_review, list_reviews

from .exceptions import (
    ServiceRequestError,
    RequestNotFoundError,
    InvalidTransition,
    InvalidValue,
    ActiveRequestExists,
    ProviderNotAvailableError,
    PermissionDenied,
    SearchExhausted,
    PaymentUnconfirmed,
    PaymentFailed,
    ExternalUnavailable,
)

__all__ = [
    # Lifecycle operations
    "RequestResult",
    "create_request",
    "engage_provider",
    "decline_request",
    "begin_negotiation",
    "withdraw_provider",
    "complete_service",
    "confirm_completion",
    "dispute_completion",
    "auto_finish_request",
    "auto_finish_overdue_requests",
    "cancel_request",
    "system_cancel_request",
    "retry_search",
    "acknowledge_request",
    "get_active_request_for_client",
    "get_active_request_for_provider",
    "get_current_request_for_client",
    "get_request_for_participant",
    "submit_review",
    "list_reviews",
    # Exceptions
    "ServiceRequestError",
    "RequestNotFoundError",
    "InvalidTransition",
    "InvalidValue",
    "ActiveRequestExists",
    "ProviderNotAvailableError",
    "PermissionDenied",
    "SearchExhausted",
    "PaymentUnconfirmed",
    "PaymentFailed",
    "ExternalUnavailable",
]
