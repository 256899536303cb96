from rest_framework import serializers

from providers.models import ProviderProfile, SERVICE_TYPE_CHOICES


class ProviderBasicSerializer(serializers.ModelSerializer):
    """
    Lite version of provider info shown to the client once a provider engages.
    """
    username = serializers.CharField(source="user.username", read_only=True)
    phone_number = serializers.CharField(source="user.phone_number", read_only=True)

    class Meta:
        model = ProviderProfile
        fields = [
            "id",
            "username",
            "phone_number",
            "vehicle_plate",
            "rating",
            "total_services",
            "current_latitude",
            "current_longitude",
        ]


class ProviderOnlineSerializer(serializers.Serializer):
    is_online = serializers.BooleanField()


class LocationUpdateSerializer(serializers.Serializer):
    latitude = serializers.DecimalField(max_digits=10, decimal_places=6)
    longitude = serializers.DecimalField(max_digits=10, decimal_places=6)
    address = serializers.CharField(required=False, allow_blank=True)


class ServicesOfferedSerializer(serializers.Serializer):
    services_offered = serializers.ListField(
        child=serializers.ChoiceField(choices=SERVICE_TYPE_CHOICES),
        allow_empty=False,
    )


class ProviderProfileSerializer(serializers.ModelSerializer):
    username = serializers.CharField(source="user.username", read_only=True)

    class Meta:
        model = ProviderProfile
        fields = [
            "id",
            "username",
            "vehicle_plate",
            "services_offered",
            "radar_range_km",
            "is_online",
            "current_latitude",
            "current_longitude",
            "current_address",
            "last_location_update",
            "rating",
            "total_services",
        ]
        read_only_fields = [
            "id",
            "username",
            "is_online",
            "current_latitude",
            "current_longitude",
            "current_address",
            "last_location_update",
            "rating",
            "total_services",
        ]
