from rest_framework import serializers

from accounts.serializers import UserBasicSerializer
from providers.models import SERVICE_TYPE_CHOICES
from providers.serializers import ProviderBasicSerializer
from .models import ServiceRequest, ChatMessage, PaymentAttempt, StatusEvent, SearchSession, Review


class ServiceRequestSerializer(serializers.ModelSerializer):
    """Serializer for Service Requests"""
    client = UserBasicSerializer(read_only=True)
    provider = ProviderBasicSerializer(read_only=True, source='provider.provider_profile', default=None)
    requires_destination = serializers.BooleanField(read_only=True)
    awaiting_side = serializers.SerializerMethodField()

    class Meta:
        model = ServiceRequest
        fields = ['id', 'client', 'provider', 'service_type', 'vehicle_type', 'requires_destination',
                  'origin_latitude', 'origin_longitude', 'origin_address',
                  'destination_latitude', 'destination_longitude', 'destination_address',
                  'status', 'status_sequence',
                  'proposed_value', 'last_proposal_by', 'value_accepted', 'agreed_value', 'awaiting_side',
                  'payment_method', 'payment_status', 'payment_confirmed', 'direct_payment',
                  'cancel_reason_category', 'cancel_reason_text', 'canceled_by',
                  'created_at', 'updated_at', 'accepted_at', 'provider_finished_at',
                  'finished_at', 'canceled_at', 'auto_finished']
        read_only_fields = fields

    def get_awaiting_side(self, obj):
        from services.negotiation import get_negotiation_state
        return get_negotiation_state(obj).awaiting_side


class ServiceRequestCreateSerializer(serializers.Serializer):
    """Serializer for creating service requests"""
    service_type = serializers.ChoiceField(choices=SERVICE_TYPE_CHOICES)
    vehicle_type = serializers.CharField(required=False, allow_blank=True, max_length=50)
    origin_latitude = serializers.DecimalField(max_digits=9, decimal_places=6)
    origin_longitude = serializers.DecimalField(max_digits=9, decimal_places=6)
    origin_address = serializers.CharField()
    destination_latitude = serializers.DecimalField(max_digits=9, decimal_places=6, required=False, allow_null=True)
    destination_longitude = serializers.DecimalField(max_digits=9, decimal_places=6, required=False, allow_null=True)
    destination_address = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class CancelSerializer(serializers.Serializer):
    """Serializer for request cancellation"""
    reason_category = serializers.ChoiceField(choices=ServiceRequest.CANCEL_REASON_CHOICES, default='other')
    reason_text = serializers.CharField(required=False, allow_blank=True)


class ReasonSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, max_length=255)


class ProposalSerializer(serializers.Serializer):
    # Parsed by the negotiation service so every caller gets the same validation
    value = serializers.CharField()


class DirectPaymentSerializer(serializers.Serializer):
    enabled = serializers.BooleanField()


class BeginPaymentSerializer(serializers.Serializer):
    method = serializers.ChoiceField(choices=ServiceRequest.PAYMENT_METHOD_CHOICES)
    payment_method_token = serializers.CharField(required=False, allow_blank=True)


class PaymentReturnSerializer(serializers.Serializer):
    attempt_id = serializers.IntegerField()


class ChatMessageCreateSerializer(serializers.Serializer):
    message = serializers.CharField(max_length=1000)


class ChatMessageSerializer(serializers.ModelSerializer):
    sender = UserBasicSerializer(read_only=True)

    class Meta:
        model = ChatMessage
        fields = ['id', 'sender', 'sender_type', 'message', 'created_at']
        read_only_fields = fields


class PaymentAttemptSerializer(serializers.ModelSerializer):

    class Meta:
        model = PaymentAttempt
        fields = ['id', 'method', 'amount', 'gateway_reference', 'checkout_url', 'client_secret',
                  'status', 'confirmed_via', 'failure_reason', 'refund_required', 'created_at', 'confirmed_at']
        read_only_fields = fields


class StatusEventSerializer(serializers.ModelSerializer):

    class Meta:
        model = StatusEvent
        fields = ['sequence', 'from_status', 'to_status', 'actor', 'note', 'created_at']
        read_only_fields = fields


class SearchSessionSerializer(serializers.ModelSerializer):
    current_radius_km = serializers.FloatField(read_only=True)

    class Meta:
        model = SearchSession
        fields = ['id', 'attempt', 'state', 'radius_ladder', 'current_index', 'current_radius_km',
                  'last_found_count', 'stage_started_at', 'cooldown_deadline', 'created_at', 'closed_at']
        read_only_fields = fields


class ReviewCreateSerializer(serializers.Serializer):
    # Range and tag checks live in the review service
    rating = serializers.IntegerField()
    tags = serializers.ListField(child=serializers.CharField(max_length=30), required=False, default=list)
    comment = serializers.CharField(required=False, allow_blank=True, default='')


class ReviewSerializer(serializers.ModelSerializer):
    reviewer = UserBasicSerializer(read_only=True)

    class Meta:
        model = Review
        fields = ['id', 'reviewer', 'reviewer_side', 'rating', 'tags', 'comment', 'created_at']
        read_only_fields = fields
