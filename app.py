from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from routers.stats import stats_router
from backend import signaling_backend
from connections import connection_hub
from constants import CORS_ORIGINS, LOG_LEVEL, LOG_FILE
from exceptions import InvariantViolation, MalformedEventError
import signaling_events as events
import uuid
from logging_config import get_logger, setup_logging

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(stats_router)

logger.info("FastAPI application initialized")


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Signaling WebSocket.

    Frames in both directions are JSON objects: {"event": <name>, "data": {...}}.
    The first frame sent to a client is `connected`, carrying the id peers
    will use to address it.
    """
    connection_id = uuid.uuid4().hex
    logger.info(f"WebSocket connection attempt, assigned connection id {connection_id}")

    await websocket.accept()
    connection_hub.add(connection_id, websocket)
    connection_hub.deliver(signaling_backend.connect(connection_id))
    connection_hub.send_to(connection_id, events.CONNECTED, {"connectionId": connection_id})
    logger.info(f"User connected: {connection_id}")

    try:
        message_count = 0
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info(f"WebSocket disconnected normally for connection {connection_id}")
                break
            message_count += 1
            logger.debug(f"Received message #{message_count} from connection {connection_id}")

            try:
                outbound = signaling_backend.handle_frame(connection_id, message.get("text"))
            except MalformedEventError as e:
                logger.warning(f"Rejected frame from connection {connection_id}: {e.message}")
                connection_hub.send_to(connection_id, events.ERROR, {"message": e.message, "event": e.event})
                continue

            connection_hub.deliver(outbound)

    except InvariantViolation as e:
        logger.error(f"Signaling state invariant broken while serving connection {connection_id}: {e}", exc_info=True)
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
    finally:
        # Cleanup on disconnect
        try:
            connection_hub.deliver(signaling_backend.disconnect(connection_id))
        except Exception as e:
            logger.error(f"Teardown failed for connection {connection_id}: {e}", exc_info=True)
        finally:
            await connection_hub.remove(connection_id)

        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"Error closing WebSocket: {e}")
