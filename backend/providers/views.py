from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated

from chamados.models import ServiceRequest
from chamados.serializers import ServiceRequestSerializer
from providers.models import ProviderProfile
from providers.serializers import (
    ProviderProfileSerializer,
    ProviderOnlineSerializer,
    LocationUpdateSerializer,
    ServicesOfferedSerializer,
)
from services.lifecycle import get_active_request_for_provider
from services.lifecycle.exceptions import InvalidValue, ProviderNotAvailableError

from providers import services as provider_services


# Utility: Ensure request.user is a provider
def require_provider(user):
    if user.role != "provider":
        return False, Response({"error": "Only providers allowed"}, status=403)
    try:
        profile = user.provider_profile
        return True, profile
    except ProviderProfile.DoesNotExist:
        return False, Response({"error": "Provider profile not found"}, status=404)


class ProviderProfileView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        ok, profile = require_provider(request.user)
        if ok is False:
            return profile  # Response object

        return Response(ProviderProfileSerializer(profile).data)

    def patch(self, request):
        ok, profile = require_provider(request.user)
        if ok is False:
            return profile

        serializer = ProviderProfileSerializer(profile, data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        serializer.save()
        return Response(serializer.data)


#    WS can replace this, but HTTP fallback remains.
class ProviderOnlineView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        ok, profile = require_provider(request.user)
        if ok is False:
            return profile

        return Response({"is_online": profile.is_online})

    def put(self, request):
        ok, profile = require_provider(request.user)
        if ok is False:
            return profile

        serializer = ProviderOnlineSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        is_online = serializer.validated_data["is_online"]

        try:
            provider_services.set_provider_online(profile, is_online)
        except ProviderNotAvailableError as exc:
            return Response({"error": str(exc)}, status=409)

        return Response({
            "message": "You are online" if is_online else "You are offline",
            "is_online": is_online,
        })


class ProviderLocationUpdateView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request):
        ok, profile = require_provider(request.user)
        if ok is False:
            return profile

        serializer = LocationUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            provider_services.update_provider_location(
                profile,
                data["latitude"],
                data["longitude"],
                address=data.get("address", ""),
            )
        except InvalidValue as exc:
            return Response({"error": str(exc)}, status=400)

        return Response({
            "message": "Location updated",
            "latitude": str(profile.current_latitude),
            "longitude": str(profile.current_longitude),
        })


class ProviderServicesView(APIView):
    permission_classes = [IsAuthenticated]

    def put(self, request):
        ok, profile = require_provider(request.user)
        if ok is False:
            return profile

        serializer = ServicesOfferedSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        provider_services.set_services_offered(profile, serializer.validated_data["services_offered"])
        return Response({"services_offered": profile.services_offered})


class ProviderCurrentRequestView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        ok, profile = require_provider(request.user)
        if ok is False:
            return profile

        current = get_active_request_for_provider(request.user)
        if not current:
            return Response({"has_active_request": False})

        return Response({
            "has_active_request": True,
            "request": ServiceRequestSerializer(current).data,
        })


class ProviderHistoryView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        ok, profile = require_provider(request.user)
        if ok is False:
            return profile

        history = (
            ServiceRequest.objects
            .filter(provider=request.user, status__in=["finished", "canceled"])
            .select_related("client")
            .order_by("-created_at")[:50]
        )
        return Response(ServiceRequestSerializer(history, many=True).data)
