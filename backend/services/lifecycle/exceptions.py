"""Custom exceptions for service request management."""


class ServiceRequestError(Exception):
    """Base class for every error raised by the request services."""
    pass


class RequestNotFoundError(ServiceRequestError):
    """Raised when a service request cannot be found."""
    pass


class InvalidTransition(ServiceRequestError):
    """Raised when an operation is not allowed in the request's current state."""
    pass


class InvalidValue(ServiceRequestError):
    """Raised when an input value (price, coordinates, destination) is malformed."""
    pass


class ActiveRequestExists(ServiceRequestError):
    """Raised when the user already has an active request."""
    pass


class ProviderNotAvailableError(ServiceRequestError):
    """Raised when a provider cannot take the request."""
    pass


class PermissionDenied(ServiceRequestError):
    """Raised when the caller is not the right party for the operation."""
    pass


class SearchExhausted(ServiceRequestError):
    """Every radius on the ladder was tried without a provider engaging."""
    code = 'search_exhausted'


class PaymentUnconfirmed(ServiceRequestError):
    """The confirmation polling window ended without a definitive answer."""
    code = 'payment_unconfirmed'


class PaymentFailed(ServiceRequestError):
    """Raised by the gateway when a payment is explicitly declined."""
    pass


class ExternalUnavailable(ServiceRequestError):
    """Raised when the geo index or the payment gateway cannot be reached."""
    pass
