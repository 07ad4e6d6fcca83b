"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from courier_dispatch.api.routes import dispatch_error_handler, router
from courier_dispatch.api.websocket import handle_driver_websocket, manager
from courier_dispatch.config import get_settings
from courier_dispatch.container import DispatchContainer
from courier_dispatch.exceptions import DispatchError
from courier_dispatch.utils.logging import get_logger, setup_logging

# Setup logging first
setup_logging()
logger = get_logger(__name__)


def create_app(container: DispatchContainer | None = None) -> FastAPI:
    """Build the application around a container."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager."""
        logger.info("application_starting")
        await app.state.container.start()

        yield

        logger.info("application_shutting_down")
        await app.state.container.stop()

    app = FastAPI(
        title="Courier Dispatch",
        description="Delivery request matching, lifecycle and live tracking for courier drivers",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.container = container or DispatchContainer(get_settings())

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(DispatchError, dispatch_error_handler)
    app.include_router(router, prefix="/api/v1", tags=["api"])

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy", "service": "courier-dispatch"}

    @app.websocket("/ws/drivers/{driver_id}")
    async def driver_websocket(websocket: WebSocket, driver_id: str) -> None:
        """WebSocket endpoint for a live driver session."""
        await handle_driver_websocket(websocket, driver_id, app.state.container, manager)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "courier_dispatch.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development",
    )
