"""Health check endpoint.

Learn: Simple GET endpoint that verifies the server is running
and Redis is reachable through the shared publisher connection.
"""

from fastapi import APIRouter, Depends

from chatrelay import __version__
from chatrelay.realtime.pubsub import RedisPubSub, get_pubsub

router = APIRouter()


@router.get("/health")
async def health_check(pubsub: RedisPubSub = Depends(get_pubsub)):
    """Check server health and Redis connectivity."""
    checks = {"server": "ok", "version": __version__}

    try:
        await pubsub.get_publisher().ping()
        checks["redis"] = "ok"
    except Exception as e:
        checks["redis"] = f"error: {e}"

    status = "healthy" if checks["redis"] == "ok" else "degraded"
    return {"status": status, **checks}
