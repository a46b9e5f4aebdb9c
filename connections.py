import asyncio
import json
from typing import Any, Dict, Iterable

from fastapi import WebSocket

from backend import OutboundEvent
from logging_config import get_logger

logger = get_logger(__name__)


class ConnectionHub:
    """Tracks the live WebSockets of this process and delivers outbound events.

    Each connection gets its own queue and sender task, so events addressed
    to one connection are written in the order the core produced them and a
    slow client never holds up delivery to the others.
    """

    def __init__(self):
        # Format: {connection_id: websocket}
        self._sockets: Dict[str, WebSocket] = {}
        # Format: {connection_id: queue of outbound messages}
        self._queues: Dict[str, asyncio.Queue] = {}
        # Format: {connection_id: sender task}
        self._sender_tasks: Dict[str, asyncio.Task] = {}

    def add(self, connection_id: str, websocket: WebSocket):
        queue = asyncio.Queue()
        self._sockets[connection_id] = websocket
        self._queues[connection_id] = queue
        self._sender_tasks[connection_id] = asyncio.create_task(self._sender_loop(connection_id, websocket, queue))
        logger.debug(f"Added connection {connection_id} to hub (local connections: {len(self._sockets)})")

    async def remove(self, connection_id: str):
        self._sockets.pop(connection_id, None)
        self._queues.pop(connection_id, None)
        task = self._sender_tasks.pop(connection_id, None)
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.debug(f"Removed connection {connection_id} from hub")

    def deliver(self, outbound: Iterable[OutboundEvent]):
        for event in outbound:
            queue = self._queues.get(event.target)
            if queue is None:
                logger.debug(f"Connection {event.target} is gone, dropping '{event.event}'")
                continue
            queue.put_nowait(event.to_message())

    def send_to(self, connection_id: str, event: str, payload: Dict[str, Any] = None):
        self.deliver([OutboundEvent(connection_id, event, payload or {})])

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._sockets

    def __len__(self) -> int:
        return len(self._sockets)

    async def _sender_loop(self, connection_id: str, websocket: WebSocket, queue: asyncio.Queue):
        while True:
            message = await queue.get()
            try:
                await websocket.send_text(json.dumps(message))
            except Exception as e:
                # The receive loop sees the disconnect and runs teardown
                logger.warning(f"Error sending '{message.get('event')}' to connection {connection_id}: {e}")
                break


connection_hub = ConnectionHub()
