"""
Core views providing infrastructure endpoints.

Views here are not part of the messaging domain but are needed to run it,
such as the health check used by load balancers and container liveness checks.
"""

import logging

from django.apps import apps
from django.db import DatabaseError, connection
from django.http import JsonResponse

logger = logging.getLogger(__name__)


def health_check(request):
    """
    Health check endpoint for monitoring and orchestration.

    Returns:
        JsonResponse with status and component health:
        - status: "healthy" or "unhealthy"
        - database: "connected" or "disconnected"
        - cache: "connected" or "disconnected"
        - realtime: open push channel and connected user counts

    HTTP Status Codes:
        200: Database reachable
        503: Database unreachable

    Cache and realtime state never fail the check; the messaging core
    degrades to fetch-on-load when push delivery is unavailable.
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "cache": "unknown",
    }
    is_healthy = True

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        health_status["database"] = "connected"
    except DatabaseError:
        logger.exception("Health check could not reach the database")
        health_status["database"] = "disconnected"
        health_status["status"] = "unhealthy"
        is_healthy = False

    from django.core.cache import cache

    cache.set("health_check", "ok", timeout=1)
    health_status["cache"] = (
        "connected" if cache.get("health_check") == "ok" else "disconnected"
    )

    hub = apps.get_app_config("chat").hub
    health_status["realtime"] = {
        "channels": hub.channel_count(),
        "connected_users": len(hub.connected_user_ids()),
    }

    return JsonResponse(health_status, status=200 if is_healthy else 503)
