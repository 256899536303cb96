from django.contrib import admin
from providers.models import ProviderProfile


@admin.register(ProviderProfile)
class ProviderProfileAdmin(admin.ModelAdmin):
    """Admin panel for provider availability and location"""

    list_display = [
        "user",
        "vehicle_plate",
        "is_online",
        "radar_range_km",
        "current_latitude",
        "current_longitude",
        "last_location_update",
    ]

    list_filter = [
        "is_online",
        "last_location_update",
    ]

    search_fields = [
        "user__username",
        "vehicle_plate",
    ]

    readonly_fields = [
        "last_location_update",
    ]

    ordering = ("user__username",)
