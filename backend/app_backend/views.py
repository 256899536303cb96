import logging

import redis
from django.conf import settings
from django.db import DatabaseError
from django.utils import timezone
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework import status
from channels.layers import get_channel_layer

from chamados.models import ServiceRequest
from chamados.tasks import run_search_step

logger = logging.getLogger(__name__)


@api_view(["GET"])
@permission_classes([AllowAny])
def health_check(request):
    """Health check endpoint for monitoring system status"""

    health_status = {
        "status": "healthy",
        "timestamp": timezone.now().isoformat(),
        "services": {}
    }

    # Database check
    try:
        ServiceRequest.objects.exists()
        health_status["services"]["database"] = "healthy"
    except DatabaseError as e:
        health_status["services"]["database"] = f"unhealthy: {e}"
        health_status["status"] = "unhealthy"

    # Redis check (only required when it backs the geo index)
    try:
        redis.Redis.from_url(settings.REDIS_URL, socket_timeout=3).ping()
        health_status["services"]["redis"] = "healthy"
    except redis.RedisError as e:
        health_status["services"]["redis"] = f"unhealthy: {e}"
        if settings.GEO_INDEX_BACKEND == "redis":
            health_status["status"] = "unhealthy"

    # Channel layer check
    if get_channel_layer() is not None:
        health_status["services"]["channels"] = "healthy"
    else:
        health_status["services"]["channels"] = "unhealthy: no channel layer"
        health_status["status"] = "unhealthy"

    # Celery check
    if run_search_step.name:
        health_status["services"]["celery"] = "healthy"
    else:
        health_status["services"]["celery"] = "unhealthy: task not registered"
        health_status["status"] = "unhealthy"

    if health_status["status"] != "healthy":
        logger.warning("Health check degraded: %s", health_status["services"])

    status_code = (
        status.HTTP_200_OK
        if health_status["status"] == "healthy"
        else status.HTTP_503_SERVICE_UNAVAILABLE
    )

    return Response(health_status, status=status_code)
