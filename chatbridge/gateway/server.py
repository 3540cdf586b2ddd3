import json
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from ..errors import error_envelope


logger = logging.getLogger(__name__)


def _frame_text(message: dict) -> str:
    text = message.get("text")
    if text is not None:
        return text
    data = message.get("bytes")
    if data is None:
        raise ValueError("Empty WebSocket frame")
    return data.decode("utf-8")


def create_app(coordinator) -> FastAPI:
    """Build the consumer-facing app around a ``BridgeCoordinator``."""
    app = FastAPI(title="chatbridge")

    @app.websocket("/")
    async def consumer_endpoint(websocket: WebSocket):
        await websocket.accept()
        await coordinator.attach_consumer(websocket)
        logger.info("Consumer connected from %s", websocket.client)

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000))

                try:
                    command = json.loads(_frame_text(message))
                except ValueError as e:
                    # UnicodeDecodeError is a ValueError too
                    await coordinator.gateway.send(
                        "error", error_envelope("websocket", e, "message processing")
                    )
                    continue

                try:
                    await coordinator.router.dispatch(command)
                except Exception as e:
                    await coordinator.gateway.send(
                        "error", error_envelope("websocket", e, "message processing")
                    )
        except WebSocketDisconnect as e:
            logger.info("Consumer disconnected (code %s)", e.code)
        finally:
            coordinator.detach_consumer(websocket)

    return app
