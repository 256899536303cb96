import functools
import logging

from rest_framework import status
from rest_framework.decorators import api_view, permission_classes, authentication_classes
from rest_framework.permissions import IsAuthenticated, AllowAny
from rest_framework.response import Response

from services import lifecycle, negotiation, payments
from services.lifecycle.exceptions import (
    ServiceRequestError,
    RequestNotFoundError,
    InvalidTransition,
    InvalidValue,
    ActiveRequestExists,
    ProviderNotAvailableError,
    PermissionDenied,
    ExternalUnavailable,
)
from services.matching.search_engine import get_latest_session
from .serializers import (
    ServiceRequestSerializer,
    ServiceRequestCreateSerializer,
    CancelSerializer,
    ReasonSerializer,
    ProposalSerializer,
    DirectPaymentSerializer,
    BeginPaymentSerializer,
    PaymentReturnSerializer,
    ChatMessageCreateSerializer,
    ChatMessageSerializer,
    PaymentAttemptSerializer,
    StatusEventSerializer,
    SearchSessionSerializer,
    ReviewCreateSerializer,
    ReviewSerializer,
)

logger = logging.getLogger(__name__)

ERROR_STATUS = [
    (RequestNotFoundError, status.HTTP_404_NOT_FOUND, 'not_found'),
    (PermissionDenied, status.HTTP_403_FORBIDDEN, 'permission_denied'),
    (InvalidValue, status.HTTP_400_BAD_REQUEST, 'invalid_value'),
    (ActiveRequestExists, status.HTTP_409_CONFLICT, 'active_request_exists'),
    (ProviderNotAvailableError, status.HTTP_409_CONFLICT, 'provider_not_available'),
    (InvalidTransition, status.HTTP_409_CONFLICT, 'invalid_transition'),
    (ExternalUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE, 'external_unavailable'),
]


def service_errors(view):
    """Translate service-layer exceptions into API responses."""

    @functools.wraps(view)
    def wrapper(request, *args, **kwargs):
        try:
            return view(request, *args, **kwargs)
        except ServiceRequestError as exc:
            for exc_class, http_status, code in ERROR_STATUS:
                if isinstance(exc, exc_class):
                    return Response({'error': str(exc), 'code': code}, status=http_status)
            logger.exception("Unhandled service error")
            return Response({'error': str(exc), 'code': 'error'}, status=status.HTTP_400_BAD_REQUEST)

    return wrapper


def _result_response(result, http_status=status.HTTP_200_OK):
    data = {
        'success': result.success,
        'message': result.message,
        'request': ServiceRequestSerializer(result.request).data if result.request else None,
        **(result.extra or {}),
    }
    if result.error_code:
        data['code'] = result.error_code
    return Response(data, status=http_status)


# ==================== Client Request APIs ====================

@api_view(['POST'])
@permission_classes([IsAuthenticated])
@service_errors
def create_request(request):
    """Create a new service request and start the provider search"""
    serializer = ServiceRequestCreateSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    result = lifecycle.create_request(request.user, **serializer.validated_data)
    return _result_response(result, status.HTTP_201_CREATED)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def get_current_request(request):
    """
    Get the caller's current request (POLLING ENDPOINT)

    Clients see their active request, or the last finished/canceled one until
    they dismiss it. Providers see the request they are engaged in.
    """
    if request.user.role == 'provider':
        current = lifecycle.get_active_request_for_provider(request.user)
    else:
        current = lifecycle.get_current_request_for_client(request.user)

    if not current:
        return Response({
            'has_active_request': False,
            'status': 'idle',
            'message': 'No active request found',
        })

    response_data = {
        'has_active_request': current.is_active,
        'status': current.status,
        'request': ServiceRequestSerializer(current).data,
    }
    if current.status == 'searching':
        session = get_latest_session(current)
        response_data['search'] = SearchSessionSerializer(session).data if session else None
    return Response(response_data)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
@service_errors
def request_detail(request, request_id):
    service_request = lifecycle.get_request_for_participant(request.user, request_id)
    return Response(ServiceRequestSerializer(service_request).data)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
@service_errors
def request_events(request, request_id):
    """Ordered status history; clients resync from here after reconnecting"""
    service_request = lifecycle.get_request_for_participant(request.user, request_id)
    after = request.query_params.get('after')
    events = service_request.status_events.all()
    if after and after.isdigit():
        events = events.filter(sequence__gt=int(after))
    return Response(StatusEventSerializer(events, many=True).data)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
@service_errors
def cancel_request(request, request_id):
    """Cancel by the client or by the engaged provider"""
    serializer = CancelSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    result = lifecycle.cancel_request(
        request.user,
        request_id,
        serializer.validated_data['reason_category'],
        serializer.validated_data.get('reason_text', ''),
    )
    return _result_response(result)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
@service_errors
def retry_search(request, request_id):
    return _result_response(lifecycle.retry_search(request.user, request_id))


@api_view(['POST'])
@permission_classes([IsAuthenticated])
@service_errors
def acknowledge_request(request, request_id):
    return _result_response(lifecycle.acknowledge_request(request.user, request_id))


@api_view(['POST'])
@permission_classes([IsAuthenticated])
@service_errors
def confirm_completion(request, request_id):
    return _result_response(lifecycle.confirm_completion(request.user, request_id))


@api_view(['POST'])
@permission_classes([IsAuthenticated])
@service_errors
def dispute_completion(request, request_id):
    serializer = ReasonSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    return _result_response(
        lifecycle.dispute_completion(request.user, request_id, serializer.validated_data.get('reason', ''))
    )


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
@service_errors
def request_reviews(request, request_id):
    """Reviews of a finished request; each side posts one"""
    if request.method == 'GET':
        return Response(ReviewSerializer(lifecycle.list_reviews(request.user, request_id), many=True).data)

    serializer = ReviewCreateSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    review = lifecycle.submit_review(request.user, request_id, **serializer.validated_data)
    return Response(ReviewSerializer(review).data, status=status.HTTP_201_CREATED)


# ==================== Provider Actions ====================

@api_view(['POST'])
@permission_classes([IsAuthenticated])
@service_errors
def engage_request(request, request_id):
    """Provider accepts an offered request"""
    return _result_response(lifecycle.engage_provider(request.user, request_id))


@api_view(['POST'])
@permission_classes([IsAuthenticated])
@service_errors
def decline_request(request, request_id):
    return _result_response(lifecycle.decline_request(request.user, request_id))


@api_view(['POST'])
@permission_classes([IsAuthenticated])
@service_errors
def withdraw_request(request, request_id):
    serializer = ReasonSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    return _result_response(
        lifecycle.withdraw_provider(request.user, request_id, serializer.validated_data.get('reason', ''))
    )


@api_view(['POST'])
@permission_classes([IsAuthenticated])
@service_errors
def complete_service(request, request_id):
    return _result_response(lifecycle.complete_service(request.user, request_id))


# ==================== Negotiation ====================

@api_view(['POST'])
@permission_classes([IsAuthenticated])
@service_errors
def begin_negotiation(request, request_id):
    return _result_response(lifecycle.begin_negotiation(request.user, request_id))


@api_view(['POST'])
@permission_classes([IsAuthenticated])
@service_errors
def propose_value(request, request_id):
    serializer = ProposalSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    return _result_response(negotiation.propose(request.user, request_id, serializer.validated_data['value']))


@api_view(['POST'])
@permission_classes([IsAuthenticated])
@service_errors
def accept_value(request, request_id):
    return _result_response(negotiation.accept_value(request.user, request_id))


@api_view(['POST'])
@permission_classes([IsAuthenticated])
@service_errors
def set_direct_payment(request, request_id):
    serializer = DirectPaymentSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    return _result_response(
        negotiation.set_direct_payment(request.user, request_id, serializer.validated_data['enabled'])
    )


@api_view(['POST'])
@permission_classes([IsAuthenticated])
@service_errors
def confirm_and_proceed(request, request_id):
    return _result_response(negotiation.confirm_and_proceed(request.user, request_id))


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
@service_errors
def chat_messages(request, request_id):
    if request.method == 'GET':
        messages = negotiation.list_chat_messages(request.user, request_id)
        return Response(ChatMessageSerializer(messages, many=True).data)

    serializer = ChatMessageCreateSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    message = negotiation.send_chat_message(request.user, request_id, serializer.validated_data['message'])
    return Response(ChatMessageSerializer(message).data, status=status.HTTP_201_CREATED)


# ==================== Payments ====================

@api_view(['POST'])
@permission_classes([IsAuthenticated])
@service_errors
def begin_payment(request, request_id):
    serializer = BeginPaymentSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    result = payments.begin_payment(
        request.user,
        request_id,
        serializer.validated_data['method'],
        serializer.validated_data.get('payment_method_token', ''),
    )
    http_status = status.HTTP_200_OK if result.success else status.HTTP_402_PAYMENT_REQUIRED
    return _result_response(result, http_status)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
@service_errors
def payment_returned(request, request_id):
    serializer = PaymentReturnSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    return _result_response(
        payments.payment_returned(request.user, request_id, serializer.validated_data['attempt_id'])
    )


@api_view(['GET'])
@permission_classes([IsAuthenticated])
@service_errors
def payment_attempts(request, request_id):
    service_request = lifecycle.get_request_for_participant(request.user, request_id)
    return Response(PaymentAttemptSerializer(service_request.payment_attempts.all(), many=True).data)


@api_view(['POST'])
@authentication_classes([])
@permission_classes([AllowAny])
@service_errors
def payment_webhook(request):
    """Gateway push; authenticated by the webhook signature"""
    outcome = payments.handle_gateway_event(
        request.body,
        request.headers.get('Stripe-Signature', ''),
    )
    return Response({'status': 'received', 'outcome': outcome})
