"""WebSocket handler for live stream session events.

A client connects to ``/ws/streams/{session_id}`` to receive every event of
that stream session as it is decoded, and may send commands back (abort,
ping). The connection's observer is released when the session reaches a
terminal event or the client disconnects.
"""

import asyncio
import contextlib
from typing import TYPE_CHECKING

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from events import StreamEvent

if TYPE_CHECKING:
    from orchestrator import Orchestrator

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

_orchestrator: "Orchestrator | None" = None


def set_orchestrator(orchestrator: "Orchestrator") -> None:
    """Set the orchestrator used by WebSocket handlers."""
    global _orchestrator
    _orchestrator = orchestrator
    logger.info("websocket_orchestrator_configured")


def get_orchestrator() -> "Orchestrator":
    """Return the configured orchestrator for WebSocket handlers."""
    if _orchestrator is None:
        raise RuntimeError(
            "Orchestrator not configured for WebSocket handlers. "
            "Call set_orchestrator() during startup."
        )
    return _orchestrator


@websocket_router.websocket("/ws/streams/{session_id}")
async def stream_events_endpoint(websocket: WebSocket, session_id: str) -> None:
    """Forward a stream session's events to the client.

    Server -> Client: every StreamEvent as JSON, ending with the terminal one.
    Client -> Server: ``{"type": "abort"}`` or ``{"type": "ping"}``.

    Args:
        websocket: The WebSocket connection.
        session_id: The stream session to observe.
    """
    await websocket.accept()
    logger.info("websocket_connected", session_id=session_id)

    orchestrator = get_orchestrator()
    dispatcher = orchestrator.dispatcher
    queue: asyncio.Queue[StreamEvent] = asyncio.Queue()

    def observer(event: StreamEvent) -> None:
        queue.put_nowait(event)

    dispatcher.subscribe(session_id, observer)

    try:

        async def send_events() -> None:
            """Forward queued events until the terminal one has been sent."""
            try:
                while True:
                    event = await queue.get()
                    await websocket.send_json(event.model_dump(mode="json"))
                    if event.is_terminal:
                        logger.info(
                            "stream_terminal_event_sent",
                            session_id=session_id,
                            event_type=event.type,
                        )
                        break
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", session_id=session_id)
            except Exception as e:
                logger.error("websocket_send_error", session_id=session_id, error=str(e))

        async def receive_commands() -> None:
            """Receive and process commands from the WebSocket client."""
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", session_id=session_id)
                        continue
                    command_type = data.get("type")

                    logger.info(
                        "command_received",
                        session_id=session_id,
                        command_type=command_type,
                    )

                    if command_type == "abort":
                        if not orchestrator.stream_client.abort(session_id):
                            await websocket.send_json(
                                {
                                    "type": "error",
                                    "error": f"Session {session_id} is not streaming",
                                }
                            )
                    elif command_type == "ping":
                        await websocket.send_json(
                            {"type": "pong", "timestamp": data.get("timestamp")}
                        )
                    else:
                        logger.warning(
                            "unknown_command",
                            session_id=session_id,
                            command_type=command_type,
                        )
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", session_id=session_id)
            except Exception as e:
                logger.error("websocket_receive_error", session_id=session_id, error=str(e))

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        # Either the terminal event went out or the client went away
        done, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", session_id=session_id)
    except Exception as e:
        logger.error("websocket_error", session_id=session_id, error=str(e))
    finally:
        dispatcher.unsubscribe(session_id, observer)
        logger.info("websocket_cleanup_complete", session_id=session_id)
