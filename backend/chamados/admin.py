"""Tells what to show in the Django admin interface for service requests"""

from django.contrib import admin, messages

from services.lifecycle import system_cancel_request, ServiceRequestError
from .models import ServiceRequest, SearchSession, ChatMessage, PaymentAttempt, StatusEvent, Review


class StatusEventInline(admin.TabularInline):
    model = StatusEvent
    extra = 0
    can_delete = False
    readonly_fields = ['sequence', 'from_status', 'to_status', 'actor', 'note', 'created_at']


@admin.register(ServiceRequest)
class ServiceRequestAdmin(admin.ModelAdmin):
    """Service Request admin"""
    list_display = ['id', 'client', 'provider', 'service_type', 'status', 'payment_status',
                    'agreed_value', 'created_at', 'finished_at']
    list_filter = ['status', 'service_type', 'payment_status', 'created_at']
    search_fields = ['client__username', 'provider__username', 'origin_address']
    readonly_fields = ['created_at', 'updated_at', 'accepted_at', 'provider_finished_at',
                       'finished_at', 'canceled_at', 'status_sequence', 'agreed_value']
    date_hierarchy = 'created_at'
    inlines = [StatusEventInline]
    actions = ['cancel_by_platform']

    @admin.action(description='Cancel selected requests (platform)')
    def cancel_by_platform(self, request, queryset):
        canceled = 0
        for service_request in queryset:
            try:
                system_cancel_request(service_request.id, 'auto_canceled', f'Canceled by {request.user}')
                canceled += 1
            except ServiceRequestError as exc:
                self.message_user(request, f"#{service_request.id}: {exc}", level=messages.WARNING)
        self.message_user(request, f"Canceled {canceled} request(s).")


@admin.register(SearchSession)
class SearchSessionAdmin(admin.ModelAdmin):
    list_display = ("request", "attempt", "state", "current_index", "last_found_count", "created_at", "closed_at")
    list_filter = ("state",)
    search_fields = ("request__id",)


@admin.register(PaymentAttempt)
class PaymentAttemptAdmin(admin.ModelAdmin):
    list_display = ("request", "method", "amount", "status", "confirmed_via", "refund_required", "created_at", "confirmed_at")
    list_filter = ("status", "method", "refund_required")
    search_fields = ("request__id", "gateway_reference")


@admin.register(ChatMessage)
class ChatMessageAdmin(admin.ModelAdmin):
    list_display = ("request", "sender_type", "sender", "message", "created_at")
    list_filter = ("sender_type",)
    search_fields = ("request__id", "message")


@admin.register(Review)
class ReviewAdmin(admin.ModelAdmin):
    list_display = ("request", "reviewer_side", "reviewer", "reviewed", "rating", "created_at")
    list_filter = ("reviewer_side", "rating")
    search_fields = ("request__id", "comment")
