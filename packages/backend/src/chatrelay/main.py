"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan owns the one RedisPubSub engine for the process: it is
built at startup, parked on app.state, and closed at shutdown. Handlers
reach it through the get_pubsub dependency, never through a global.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatrelay import __version__
from chatrelay.api import api_router
from chatrelay.config import settings

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` runs at
    shutdown. An engine already on app.state (tests, embedding) is used
    as-is instead of building one from settings.
    """
    logger.info(
        "chatrelay.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    from chatrelay.realtime.pubsub import build_pubsub

    pubsub = getattr(app.state, "pubsub", None)
    if pubsub is None:
        pubsub = build_pubsub(settings)
        app.state.pubsub = pubsub

    try:
        await pubsub.get_publisher().ping()
        logger.info("chatrelay.redis_connected", url=settings.redis_url)
    except Exception as e:
        logger.warning("chatrelay.redis_unavailable", error=str(e))
        # The app still serves; publishes fail with 503 until Redis is back

    yield

    logger.info("chatrelay.shutdown")
    await pubsub.close()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="chatrelay",
        description="Real-time chat over a shared Redis pub/sub connection",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)

    from chatrelay.realtime.websocket import router as ws_router
    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: chatrelay.main:app)
app = create_app()
