"""FastAPI application factory and server entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from adapters.web.rooms import RoomHub, user_room
from adapters.web.routes import router, socket_router
from healthstream.config import AppConfig, configure_logging, get_config
from healthstream.domain.models import Reminder
from healthstream.services.monitor import HealthStreamService

logger = structlog.get_logger(__name__)


def create_app(
    config: AppConfig | None = None, service: HealthStreamService | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Optional configuration override (useful for testing)
        service: Optional pre-built engine, e.g. one wired to a fake insight generator

    Run with uvicorn:
        uvicorn adapters.web.app:create_app --factory
    """
    config = config or get_config()
    service = service or HealthStreamService(config)
    hub = RoomHub()

    app = FastAPI(
        title="Health Event Stream",
        description="Real-time health event aggregation and fan-out",
        version="0.1.0",
        docs_url="/docs" if config.debug else None,
        lifespan=_lifespan,
    )

    app.state.config = config
    app.state.service = service
    app.state.hub = hub

    async def push_reminder_alert(reminder: Reminder, message: str) -> None:
        await hub.broadcast(
            {
                "type": "reminder-alert",
                "reminder": reminder.model_dump(mode="json"),
                "message": message,
                "timestamp": datetime.now(UTC).isoformat(),
            },
            room=user_room(reminder.owner_id),
        )

    service.reminder_scheduler.on_reminder(push_reminder_alert)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    app.include_router(socket_router)
    return app


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    service: HealthStreamService = app.state.service
    await service.start()
    logger.info("api_started", environment=app.state.config.environment)
    try:
        yield
    finally:
        await service.stop()
        logger.info("api_stopped")


def main() -> None:
    config = get_config()
    configure_logging(config.logging)
    uvicorn.run(
        "adapters.web.app:create_app",
        factory=True,
        host=config.api.host,
        port=config.api.port,
        reload=config.api.reload,
    )


if __name__ == "__main__":
    main()
