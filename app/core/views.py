"""
Infrastructure endpoints.
"""

import logging

from django.core.cache import cache
from django.db import connection
from django.http import JsonResponse

logger = logging.getLogger(__name__)


def _database_ok() -> bool:
    with connection.cursor() as cursor:
        cursor.execute("SELECT 1")
        return cursor.fetchone() == (1,)


def _cache_ok() -> bool:
    cache.set("health_check", "ok", timeout=5)
    return cache.get("health_check") == "ok"


def health_check(request):
    """
    Liveness/readiness probe.

    The database is required; Redis backs the cache and the retry tick
    lock, so a cache outage is reported but does not fail the probe.

    Returns:
        200 {"status": "healthy", "database": "connected", "cache": ...}
        503 when the database is unreachable
    """
    components = {}
    for name, probe in (("database", _database_ok), ("cache", _cache_ok)):
        try:
            components[name] = "connected" if probe() else "disconnected"
        except Exception as e:
            logger.warning(f"Health check: {name} unavailable: {e}")
            components[name] = "disconnected"

    healthy = components["database"] == "connected"
    return JsonResponse(
        {"status": "healthy" if healthy else "unhealthy", **components},
        status=200 if healthy else 503,
    )
