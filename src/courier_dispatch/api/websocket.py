"""WebSocket handler for live driver sessions."""

from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from courier_dispatch.container import DispatchContainer, DriverSession
from courier_dispatch.exceptions import DispatchError, RequestUnavailableError
from courier_dispatch.models.location import LocationFix
from courier_dispatch.models.request import DeliveryRequest
from courier_dispatch.services.request_manager import RequestPrompt
from courier_dispatch.utils.logging import get_logger

logger = get_logger(__name__)


class PermissionReport(BaseModel):
    foreground: bool | None = None
    background: bool | None = None


class DriverMessage(BaseModel):
    """Inbound message from the driver's device."""

    type: str  # "online", "offline", "position", "accept", "decline", "ping"
    request_id: str | None = None
    permissions: PermissionReport | None = None
    position: LocationFix | None = None


class ConnectionManager:
    """Manages driver WebSocket connections."""

    def __init__(self) -> None:
        self.active_connections: dict[str, WebSocket] = {}

    async def connect(self, driver_id: str, websocket: WebSocket) -> None:
        """Accept and register a WebSocket connection."""
        await websocket.accept()
        self.active_connections[driver_id] = websocket
        logger.info("websocket_connected", driver_id=driver_id)

    def disconnect(self, driver_id: str) -> None:
        """Remove a WebSocket connection."""
        if driver_id in self.active_connections:
            del self.active_connections[driver_id]
            logger.info("websocket_disconnected", driver_id=driver_id)

    async def send_message(self, driver_id: str, message: dict[str, Any]) -> None:
        """Send a message to a specific connection."""
        if driver_id in self.active_connections:
            await self.active_connections[driver_id].send_json(message)


class DriverConnection:
    """Routes one driver's messages to their session."""

    def __init__(
        self,
        driver_id: str,
        session: DriverSession,
        connections: ConnectionManager,
        prompt_timeout: float,
    ):
        self.driver_id = driver_id
        self.session = session
        self.connections = connections
        self.prompt_timeout = prompt_timeout

    async def send(self, message: dict[str, Any]) -> None:
        await self.connections.send_message(self.driver_id, message)

    async def on_new_request(self, request: DeliveryRequest) -> None:
        prompt = RequestPrompt(request, self.prompt_timeout, self.on_prompt_expired)
        self.session.prompts[request.id] = prompt
        prompt.open()
        await self.send(
            {
                "type": "new_request",
                "request": request.model_dump(mode="json", by_alias=True),
                "expires_in": self.prompt_timeout,
            }
        )

    async def on_prompt_expired(self, request: DeliveryRequest) -> None:
        self.session.prompts.pop(request.id, None)
        await self.session.controller.decline(request.id)
        await self.send({"type": "request_expired", "request_id": request.id})

    def close_prompt(self, request_id: str | None) -> None:
        prompt = self.session.prompts.pop(request_id, None)
        if prompt is not None:
            prompt.close()

    async def handle(self, message: DriverMessage) -> None:
        controller = self.session.controller

        if message.type == "ping":
            await self.send({"type": "pong"})

        elif message.type == "online":
            if message.permissions:
                self.session.permissions.update(**message.permissions.model_dump())
            warnings = await controller.go_online(self.on_new_request)
            await self.send({"type": "online", "status": controller.status()})
            for warning in warnings:
                await self.send({"type": "warning", "warning": warning})

        elif message.type == "offline":
            await controller.go_offline()
            await self.send({"type": "offline", "status": controller.status()})

        elif message.type == "position" and message.position:
            await self.session.positions.push(message.position)

        elif message.type == "accept" and message.request_id:
            self.close_prompt(message.request_id)
            try:
                accepted = await controller.accept(message.request_id)
            except RequestUnavailableError:
                await self.send({"type": "request_unavailable", "request_id": message.request_id})
                return
            await self.send(
                {"type": "accepted", "request": accepted.model_dump(mode="json", by_alias=True)}
            )
            for warning in controller.warnings:
                await self.send({"type": "warning", "warning": warning})
            controller.warnings.clear()

        elif message.type == "decline" and message.request_id:
            self.close_prompt(message.request_id)
            await controller.decline(message.request_id)
            await self.send({"type": "declined", "request_id": message.request_id})

        else:
            await self.send({"type": "error", "error": "unknown_message", "message": message.type})


async def handle_driver_websocket(
    websocket: WebSocket,
    driver_id: str,
    container: DispatchContainer,
    connections: ConnectionManager,
) -> None:
    """
    Serve one driver's live session.

    The connection dropping tears the session down, which removes the
    driver's live position as an unclean disconnect would.
    """
    await connections.connect(driver_id, websocket)
    session = container.session(driver_id)
    connection = DriverConnection(
        driver_id,
        session,
        connections,
        container.settings.request_prompt_timeout_seconds,
    )

    try:
        while True:
            data = await websocket.receive_json()
            try:
                message = DriverMessage.model_validate(data)
            except ValidationError as e:
                await connection.send({"type": "error", "error": "invalid_message", "detail": str(e)})
                continue

            try:
                await connection.handle(message)
            except DispatchError as e:
                logger.warning("driver_message_failed", driver_id=driver_id, type=message.type, error=e.code)
                await connection.send({"type": "error", **e.to_dict()})

    except WebSocketDisconnect:
        logger.info("driver_websocket_closed", driver_id=driver_id)
    finally:
        connections.disconnect(driver_id)
        await container.close_session(driver_id)


# Global connection manager
manager = ConnectionManager()
