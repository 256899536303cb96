from django.db import models
from django.conf import settings

from providers.models import SERVICE_TYPE_CHOICES

# Service types whose request carries a drop-off destination
DESTINATION_SERVICE_TYPES = {'towing'}

ACTIVE_STATUSES = [
    'searching',
    'accepted',
    'negotiating',
    'awaiting_payment',
    'in_service',
    'pending_client_confirmation',
]

# Statuses in which a provider is bound to the request
PROVIDER_BOUND_STATUSES = [
    'accepted',
    'negotiating',
    'awaiting_payment',
    'in_service',
    'pending_client_confirmation',
    'finished',
]

TERMINAL_STATUSES = ['finished', 'canceled']

SIDE_CHOICES = [
    ('client', 'Client'),
    ('provider', 'Provider'),
]


def requires_destination(service_type: str) -> bool:
    return service_type in DESTINATION_SERVICE_TYPES


class ServiceRequest(models.Model):
    """A client's roadside service request (chamado)"""

    STATUS_CHOICES = [
        ('idle', 'Idle'),
        ('searching', 'Searching'),
        ('accepted', 'Accepted'),
        ('negotiating', 'Negotiating'),
        ('awaiting_payment', 'Awaiting Payment'),
        ('in_service', 'In Service'),
        ('pending_client_confirmation', 'Pending Client Confirmation'),
        ('finished', 'Finished'),
        ('canceled', 'Canceled'),
    ]

    LAST_PROPOSAL_CHOICES = [('none', 'Nobody')] + SIDE_CHOICES

    PAYMENT_METHOD_CHOICES = [
        ('card', 'Card'),
        ('instant_transfer', 'Instant Transfer'),
        ('wallet', 'Wallet'),
        ('direct_to_provider', 'Direct to Provider'),
    ]

    PAYMENT_STATUS_CHOICES = [
        ('none', 'Not Started'),
        ('pending', 'Pending'),
        ('confirming', 'Confirming'),
        ('failed', 'Failed'),
        ('paid', 'Paid'),
    ]

    CANCELED_BY_CHOICES = SIDE_CHOICES + [('system', 'System')]

    CANCEL_REASON_CHOICES = [
        # client
        ('changed_mind', 'Changed my mind'),
        ('found_alternative', 'Found another solution'),
        ('wait_time_too_long', 'Wait time too long'),
        ('price_disagreement', 'Did not agree with the price'),
        ('emergency_resolved', 'Problem was solved'),
        # provider
        ('unavailable', 'Not available right now'),
        ('location_too_far', 'Location too far'),
        ('vehicle_issue', 'Problem with my vehicle'),
        ('emergency', 'Personal emergency'),
        ('incorrect_info', 'Incorrect client information'),
        # system
        ('payment_timeout', 'Payment was not completed in time'),
        ('auto_canceled', 'Canceled by the platform'),
        ('other', 'Other'),
    ]

    client = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='service_requests'
    )

    provider = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='assigned_requests'
    )

    service_type = models.CharField(max_length=20, choices=SERVICE_TYPE_CHOICES)
    vehicle_type = models.CharField(max_length=50, blank=True)

    # Origin (where the vehicle is)
    origin_latitude = models.DecimalField(max_digits=9, decimal_places=6)
    origin_longitude = models.DecimalField(max_digits=9, decimal_places=6)
    origin_address = models.TextField()

    # Destination (towing only)
    destination_latitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    destination_longitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    destination_address = models.TextField(null=True, blank=True)

    status = models.CharField(max_length=30, choices=STATUS_CHOICES, default='idle')
    status_sequence = models.PositiveIntegerField(default=0)

    # Negotiation
    proposed_value = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    last_proposal_by = models.CharField(max_length=10, choices=LAST_PROPOSAL_CHOICES, default='none')
    value_accepted = models.BooleanField(default=False)
    agreed_value = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)

    # Payment
    payment_method = models.CharField(max_length=20, choices=PAYMENT_METHOD_CHOICES, null=True, blank=True)
    payment_status = models.CharField(max_length=20, choices=PAYMENT_STATUS_CHOICES, default='none')
    payment_confirmed = models.BooleanField(default=False)
    direct_payment = models.BooleanField(default=False)

    # Providers that declined or withdrew; never re-offered for this request
    excluded_provider_ids = models.JSONField(default=list, blank=True)

    # Cancellation
    cancel_reason_category = models.CharField(max_length=30, choices=CANCEL_REASON_CHOICES, blank=True)
    cancel_reason_text = models.TextField(blank=True)
    canceled_by = models.CharField(max_length=10, choices=CANCELED_BY_CHOICES, blank=True)

    # Timestamps
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField()
    accepted_at = models.DateTimeField(null=True, blank=True)
    provider_finished_at = models.DateTimeField(null=True, blank=True)
    finished_at = models.DateTimeField(null=True, blank=True)
    canceled_at = models.DateTimeField(null=True, blank=True)
    acknowledged_at = models.DateTimeField(null=True, blank=True)
    auto_finished = models.BooleanField(default=False)

    class Meta:
        db_table = 'service_requests'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status'], name='service_req_status_3c1a2e_idx'),
            models.Index(fields=['client', 'status'], name='service_req_client__8f0b51_idx'),
            models.Index(fields=['provider', 'status'], name='service_req_provide_d2e7a4_idx'),
        ]

    @property
    def requires_destination(self) -> bool:
        return requires_destination(self.service_type)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def side_of(self, user) -> str | None:
        """Return 'client' / 'provider' for a participant, None for anyone else."""
        user_id = getattr(user, 'id', user)
        if user_id is None:
            return None
        if user_id == self.client_id:
            return 'client'
        if self.provider_id is not None and user_id == self.provider_id:
            return 'provider'
        return None

    def __str__(self):
        return f"Request #{self.id} - {self.service_type} - {self.status}"


class SearchSession(models.Model):
    """One progressive-radius matching attempt for a request"""

    STATE_CHOICES = [
        ('idle', 'Idle'),
        ('searching', 'Searching'),
        ('expanding_radius', 'Expanding Radius'),
        ('waiting_cooldown', 'Waiting Cooldown'),
        ('provider_found', 'Provider Found'),
        ('timeout', 'Timeout'),
        ('canceled', 'Canceled'),
    ]

    request = models.ForeignKey(
        ServiceRequest,
        on_delete=models.CASCADE,
        related_name='search_sessions'
    )

    attempt = models.PositiveIntegerField(default=1)
    radius_ladder = models.JSONField()
    current_index = models.PositiveIntegerField(default=0)
    state = models.CharField(max_length=20, choices=STATE_CHOICES, default='idle')

    excluded_provider_ids = models.JSONField(default=list, blank=True)
    offered_provider_ids = models.JSONField(default=list, blank=True)

    # Bumped whenever a new step is scheduled; older scheduled steps become no-ops
    step_token = models.PositiveIntegerField(default=0)

    stage_started_at = models.DateTimeField(null=True, blank=True)
    cooldown_deadline = models.DateTimeField(null=True, blank=True)
    last_query_at = models.DateTimeField(null=True, blank=True)
    last_found_count = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    closed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'search_sessions'
        ordering = ['-created_at']

    @property
    def is_open(self) -> bool:
        return self.closed_at is None and self.state not in ('timeout', 'canceled')

    @property
    def current_radius_km(self):
        if self.current_index < len(self.radius_ladder):
            return self.radius_ladder[self.current_index]
        return None

    def __str__(self):
        return f"Search #{self.id} (request {self.request_id}) - {self.state}"


class ChatMessage(models.Model):
    """Negotiation chat between client and provider, plus system entries"""

    SENDER_TYPE_CHOICES = SIDE_CHOICES + [('system', 'System')]

    request = models.ForeignKey(
        ServiceRequest,
        on_delete=models.CASCADE,
        related_name='chat_messages'
    )
    sender = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
    )
    sender_type = models.CharField(max_length=10, choices=SENDER_TYPE_CHOICES)
    message = models.TextField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'chat_messages'
        ordering = ['created_at', 'id']

    def __str__(self):
        return f"[{self.sender_type}] {self.message[:40]}"


class PaymentAttempt(models.Model):
    """One gateway intent/checkout opened for a request"""

    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('confirming', 'Confirming'),
        ('succeeded', 'Succeeded'),
        ('failed', 'Failed'),
        ('superseded', 'Superseded'),
    ]

    CONFIRMED_VIA_CHOICES = [
        ('client', 'Synchronous client confirmation'),
        ('push', 'Gateway push'),
        ('poll', 'Status polling'),
        ('direct', 'Direct payment'),
    ]

    request = models.ForeignKey(
        ServiceRequest,
        on_delete=models.CASCADE,
        related_name='payment_attempts'
    )
    method = models.CharField(max_length=20, choices=ServiceRequest.PAYMENT_METHOD_CHOICES)
    amount = models.DecimalField(max_digits=10, decimal_places=2)

    gateway_reference = models.CharField(max_length=255, blank=True)
    checkout_url = models.TextField(blank=True)
    client_secret = models.CharField(max_length=255, blank=True)

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending')
    confirmed_via = models.CharField(max_length=10, choices=CONFIRMED_VIA_CHOICES, blank=True)
    failure_reason = models.TextField(blank=True)
    # Paid at the gateway after the request was paid or canceled
    refund_required = models.BooleanField(default=False)

    poll_started_at = models.DateTimeField(null=True, blank=True)
    poll_count = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    confirmed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'payment_attempts'
        ordering = ['-created_at']

    @property
    def is_open(self) -> bool:
        return self.status in ('pending', 'confirming')

    def __str__(self):
        return f"Payment #{self.id} ({self.method}) - request {self.request_id} - {self.status}"


class StatusEvent(models.Model):
    """Ordered log of status transitions for a request"""

    ACTOR_CHOICES = SIDE_CHOICES + [('system', 'System')]

    request = models.ForeignKey(
        ServiceRequest,
        on_delete=models.CASCADE,
        related_name='status_events'
    )
    sequence = models.PositiveIntegerField()
    from_status = models.CharField(max_length=30)
    to_status = models.CharField(max_length=30)
    actor = models.CharField(max_length=10, choices=ACTOR_CHOICES)
    note = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField()

    class Meta:
        db_table = 'status_events'
        ordering = ['request', 'sequence']
        constraints = [
            models.UniqueConstraint(
                fields=['request', 'sequence'],
                name='unique_request_sequence'
            )
        ]

    def __str__(self):
        return f"#{self.request_id}.{self.sequence}: {self.from_status} -> {self.to_status}"


class Review(models.Model):
    """Rating one party leaves for the other after a finished request"""

    REVIEW_TAGS = [
        'excelente',
        'rapido',
        'educado',
        'pontual',
        'preco_justo',
        'recomendo',
    ]

    request = models.ForeignKey(
        ServiceRequest,
        on_delete=models.CASCADE,
        related_name='reviews'
    )
    reviewer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='reviews_given'
    )
    reviewed = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='reviews_received'
    )
    reviewer_side = models.CharField(max_length=10, choices=SIDE_CHOICES)
    rating = models.PositiveSmallIntegerField()
    tags = models.JSONField(default=list, blank=True)
    comment = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'reviews'
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['request', 'reviewer_side'],
                name='unique_review_per_side'
            )
        ]

    def __str__(self):
        return f"Review of #{self.request_id} by {self.reviewer_side}: {self.rating}"
