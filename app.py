import uuid
from typing import Optional

from fastapi import FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from backend import build_broker
from constants import LOG_FILE, LOG_LEVEL
from logging_config import get_logger, setup_logging
from relay import Peer, RoomRelay
from routers.rooms import rooms_router

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


def create_app(relay: Optional[RoomRelay] = None) -> FastAPI:
    app = FastAPI(title="Ambulance tracking relay")

    # Mobile and web clients connect from anywhere
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.relay = relay if relay is not None else RoomRelay(broker=build_broker())
    app.include_router(rooms_router)
    app.add_api_websocket_route("/ws", relay_endpoint)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    logger.info("FastAPI application initialized")
    return app


async def relay_endpoint(websocket: WebSocket, booking_id: Optional[str] = Query(None, alias="bookingId")):
    """One peer connection. Rooms are joined with ``join_booking`` frames, or
    up front with the ``bookingId`` query parameter.
    """
    relay: RoomRelay = websocket.app.state.relay
    peer = Peer(str(uuid.uuid4()), websocket)

    await websocket.accept()
    logger.info(f"WebSocket connection {peer.connection_id} accepted")

    try:
        if booking_id:
            relay.join(peer, booking_id)

        message_count = 0
        while True:
            data = await websocket.receive_text()
            message_count += 1
            logger.debug(f"Received message #{message_count} from connection {peer.connection_id}")
            await relay.handle(peer, data)
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally for connection {peer.connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {peer.connection_id}: {e}", exc_info=True)
        try:
            await websocket.close()
        except RuntimeError as close_error:
            logger.debug(f"Error closing WebSocket: {close_error}")
    finally:
        relay.disconnect(peer)
        logger.info(f"Connection {peer.connection_id} released")


app = create_app()
