from django.db import models
from django.utils import timezone
from django.conf import settings

User = settings.AUTH_USER_MODEL

SERVICE_TYPE_CHOICES = [
    ('towing', 'Towing'),
    ('tire', 'Mobile Tire Service'),
    ('mechanical', 'Mobile Mechanic'),
    ('locksmith', 'Automotive Locksmith'),
]


def default_services_offered():
    return ['towing']


class ProviderProfile(models.Model):
    """Provider availability, live location and service capabilities"""

    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name='provider_profile')

    vehicle_plate = models.CharField(max_length=20, blank=True)
    services_offered = models.JSONField(default=default_services_offered)
    # Farthest distance (km) this provider is willing to drive to a client
    radar_range_km = models.PositiveIntegerField(default=25)

    # Availability & location
    is_online = models.BooleanField(default=False)
    current_latitude = models.DecimalField(max_digits=10, decimal_places=6, null=True, blank=True)
    current_longitude = models.DecimalField(max_digits=10, decimal_places=6, null=True, blank=True)
    current_address = models.TextField(blank=True)
    last_location_update = models.DateTimeField(default=timezone.now)

    rating = models.DecimalField(max_digits=3, decimal_places=2, default=5)
    total_services = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = 'provider_profiles'

    def offers(self, service_type: str) -> bool:
        return service_type in (self.services_offered or [])

    @property
    def has_location(self) -> bool:
        return self.current_latitude is not None and self.current_longitude is not None

    def __str__(self):
        return f"{self.user.username} - {'online' if self.is_online else 'offline'}"
