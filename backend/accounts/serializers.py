from rest_framework import serializers

from .models import User


class UserBasicSerializer(serializers.ModelSerializer):
    """Public view of a request participant."""

    class Meta:
        model = User
        fields = ["id", "username", "role", "phone_number"]
        read_only_fields = fields
