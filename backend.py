import json
import random
import string
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple

from pydantic import ValidationError

import signaling_events as events
from constants import ROOM_ID_PREFIX, ROOM_ID_SUFFIX_LENGTH
from exceptions import InvariantViolation, MalformedEventError
from logging_config import get_logger
from schemas.signaling import (
    CancelMatchRequest,
    EndCallRequest,
    EventEnvelope,
    FindRandomMatchRequest,
    SendAnswerRequest,
    SendIceCandidateRequest,
    SendOfferRequest,
)

logger = get_logger(__name__)


@dataclass
class Connection:
    connection_id: str
    in_call: bool = False


@dataclass
class Room:
    room_id: str
    user1: str
    user2: str

    def has_member(self, connection_id: str) -> bool:
        return connection_id in (self.user1, self.user2)

    def other(self, connection_id: str) -> str:
        return self.user2 if connection_id == self.user1 else self.user1


@dataclass(frozen=True)
class OutboundEvent:
    """An event the core wants delivered to one connection."""
    target: str
    event: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> Dict[str, Any]:
        return {"event": self.event, "data": self.payload}


class SignalingState:
    """Registry, waiting queue and room table behind a single lock.

    `Connection.in_call` is written by the matchmaker and the relay even
    though the registry owns the records; every write happens with `lock`
    held.
    """

    def __init__(self):
        self.lock = threading.RLock()
        self.connections: Dict[str, Connection] = {}
        self.waiting: Deque[str] = deque()
        self.rooms: Dict[str, Room] = {}


def generate_room_id(length: int = ROOM_ID_SUFFIX_LENGTH) -> str:
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=length))
    return f"{ROOM_ID_PREFIX}_{int(time.time() * 1000)}_{suffix}"


class ConnectionRegistry:
    def __init__(self, state: SignalingState):
        self.state = state

    def register(self, connection_id: str):
        with self.state.lock:
            if connection_id in self.state.connections:
                logger.warning(f"Connection {connection_id} registered twice, overwriting record")
            self.state.connections[connection_id] = Connection(connection_id=connection_id)
        logger.info(f"Registered connection {connection_id}")

    def unregister(self, connection_id: str):
        with self.state.lock:
            removed = self.state.connections.pop(connection_id, None)
        if removed:
            logger.debug(f"Unregistered connection {connection_id}")

    def get(self, connection_id: str) -> Optional[Connection]:
        with self.state.lock:
            return self.state.connections.get(connection_id)

    def set_in_call(self, connection_id: str, in_call: bool):
        with self.state.lock:
            connection = self.state.connections.get(connection_id)
            if connection:
                connection.in_call = in_call

    def count(self) -> int:
        with self.state.lock:
            return len(self.state.connections)


class Matchmaker:
    """FIFO matchmaking over the waiting queue. The only place rooms are created."""

    def __init__(self, state: SignalingState, registry: ConnectionRegistry):
        self.state = state
        self.registry = registry

    def request_match(self, connection_id: str) -> List[OutboundEvent]:
        with self.state.lock:
            connection = self.registry.get(connection_id)
            if connection is None:
                logger.debug(f"Match request from unknown connection {connection_id}, ignoring")
                return []
            if connection.in_call:
                logger.info(f"Connection {connection_id} is already in a call, ignoring match request")
                return []
            if connection_id in self.state.waiting:
                logger.debug(f"Connection {connection_id} is already waiting")
                return []

            self.state.waiting.append(connection_id)
            logger.info(f"Connection {connection_id} is looking for a match (waiting: {len(self.state.waiting)})")
            return self._pair_waiting()

    def cancel_wait(self, connection_id: str) -> bool:
        with self.state.lock:
            try:
                self.state.waiting.remove(connection_id)
            except ValueError:
                return False
        logger.debug(f"Removed connection {connection_id} from waiting queue")
        return True

    def waiting_count(self) -> int:
        with self.state.lock:
            return len(self.state.waiting)

    def _check_waiting(self):
        """Raise before the pairing pass touches anything if the queue is corrupt."""
        seen = set()
        for connection_id in self.state.waiting:
            if connection_id in seen:
                raise InvariantViolation(f"Connection {connection_id} is queued twice")
            seen.add(connection_id)
            connection = self.registry.get(connection_id)
            if connection is not None and connection.in_call:
                raise InvariantViolation(f"Connection {connection_id} is waiting while in a call")

    def _pair_waiting(self) -> List[OutboundEvent]:
        self._check_waiting()

        outbound = []
        waiting = self.state.waiting
        while len(waiting) >= 2:
            user1 = waiting.popleft()
            user2 = waiting.popleft()

            connection1 = self.registry.get(user1)
            connection2 = self.registry.get(user2)
            if connection1 is None or connection2 is None:
                logger.info(f"Dropping stale pair {user1}/{user2}, one side is gone")
                continue

            room_id = self._new_room_id()
            self.state.rooms[room_id] = Room(room_id=room_id, user1=user1, user2=user2)
            connection1.in_call = True
            connection2.in_call = True

            outbound.append(OutboundEvent(user1, events.MATCHED, {"roomId": room_id, "peer": user2}))
            outbound.append(OutboundEvent(user2, events.MATCHED, {"roomId": room_id, "peer": user1}))
            logger.info(f"Matched users {user1} and {user2} in room {room_id}")
        return outbound

    def _new_room_id(self) -> str:
        room_id = generate_room_id()
        while room_id in self.state.rooms:
            room_id = generate_room_id()
        return room_id


class SessionRelay:
    """Routes negotiation messages and tears rooms down."""

    def __init__(self, state: SignalingState, registry: ConnectionRegistry, matchmaker: Matchmaker):
        self.state = state
        self.registry = registry
        self.matchmaker = matchmaker

    def relay(self, kind: str, sender_id: str, target_id: str, payload: Any) -> List[OutboundEvent]:
        outbound_event, payload_field = events.RELAY_KINDS[kind]
        with self.state.lock:
            if self.registry.get(target_id) is None:
                logger.debug(f"Dropping {kind} from {sender_id}: target {target_id} is gone")
                return []
        logger.debug(f"Relaying {kind} from {sender_id} to {target_id}")
        return [OutboundEvent(target_id, outbound_event, {"from": sender_id, payload_field: payload})]

    def end_call(self, room_id: str, initiator_id: str) -> List[OutboundEvent]:
        with self.state.lock:
            room = self.state.rooms.pop(room_id, None)
            if room is None:
                logger.debug(f"End call for unknown room {room_id} from {initiator_id}, ignoring")
                return []
            # Both members are notified, the initiator included
            outbound = [
                OutboundEvent(room.user1, events.CALL_ENDED),
                OutboundEvent(room.user2, events.CALL_ENDED),
            ]
            self.registry.set_in_call(room.user1, False)
            self.registry.set_in_call(room.user2, False)
        logger.info(f"Call in room {room_id} ended by {initiator_id}")
        return outbound

    def on_disconnect(self, connection_id: str) -> List[OutboundEvent]:
        outbound = []
        with self.state.lock:
            try:
                self.matchmaker.cancel_wait(connection_id)

                room = self.room_for(connection_id)
                if room:
                    peer_id = room.other(connection_id)
                    if self.registry.get(peer_id) is not None:
                        outbound.append(OutboundEvent(peer_id, events.CALL_ENDED))
                        self.registry.set_in_call(peer_id, False)
                    del self.state.rooms[room.room_id]
                    logger.info(f"Room {room.room_id} closed, {connection_id} disconnected")
            finally:
                # Last, queue and room cleanup above still need the record
                self.registry.unregister(connection_id)
        logger.info(f"User disconnected: {connection_id}")
        return outbound

    def room_for(self, connection_id: str) -> Optional[Room]:
        with self.state.lock:
            rooms = [room for room in self.state.rooms.values() if room.has_member(connection_id)]
        if len(rooms) > 1:
            raise InvariantViolation(f"Connection {connection_id} is a member of {len(rooms)} rooms")
        return rooms[0] if rooms else None

    def active_room_count(self) -> int:
        with self.state.lock:
            return len(self.state.rooms)


class SignalingBackend:
    """Entry point for the connection handler.

    Every inbound event is validated, then applied under the state lock;
    the resulting outbound events are returned so the caller can deliver
    them once the lock is released.
    """

    def __init__(self, state: Optional[SignalingState] = None):
        self.state = state or SignalingState()
        self.registry = ConnectionRegistry(self.state)
        self.matchmaker = Matchmaker(self.state, self.registry)
        self.relay = SessionRelay(self.state, self.registry, self.matchmaker)
        self._handlers = {
            events.FIND_RANDOM_MATCH: (FindRandomMatchRequest, self._find_random_match),
            events.CANCEL_MATCH: (CancelMatchRequest, self._cancel_match),
            events.SEND_OFFER: (SendOfferRequest, self._send_offer),
            events.SEND_ANSWER: (SendAnswerRequest, self._send_answer),
            events.SEND_ICE_CANDIDATE: (SendIceCandidateRequest, self._send_ice_candidate),
            events.END_CALL: (EndCallRequest, self._end_call),
        }

    def connect(self, connection_id: str) -> List[OutboundEvent]:
        self.registry.register(connection_id)
        return []

    def disconnect(self, connection_id: str) -> List[OutboundEvent]:
        return self.relay.on_disconnect(connection_id)

    def handle_event(self, connection_id: str, event: str, data: Any = None) -> List[OutboundEvent]:
        handler = self._handlers.get(event)
        if handler is None:
            raise MalformedEventError(f"Unknown event '{event}'", event)
        schema, apply = handler
        try:
            request = schema.model_validate(data if data is not None else {})
        except ValidationError as e:
            raise MalformedEventError(f"Invalid payload for '{event}': {e.error_count()} error(s)", event) from e

        with self.state.lock:
            return apply(connection_id, request)

    def handle_frame(self, connection_id: str, raw: Optional[str]) -> List[OutboundEvent]:
        event, data = self.parse_frame(raw)
        return self.handle_event(connection_id, event, data)

    @staticmethod
    def parse_frame(raw: Optional[str]) -> Tuple[str, Optional[Dict[str, Any]]]:
        if not isinstance(raw, str):
            raise MalformedEventError("Frame must be a text frame")
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedEventError("Frame is not valid JSON") from e
        try:
            envelope = EventEnvelope.model_validate(message)
        except ValidationError as e:
            raise MalformedEventError("Frame must be an object with 'event' and optional 'data'") from e
        return envelope.event, envelope.data

    def snapshot(self) -> Dict[str, int]:
        with self.state.lock:
            return {
                "connections": self.registry.count(),
                "waiting": self.matchmaker.waiting_count(),
                "active_rooms": self.relay.active_room_count(),
            }

    def _find_random_match(self, connection_id: str, request: FindRandomMatchRequest):
        return self.matchmaker.request_match(connection_id)

    def _cancel_match(self, connection_id: str, request: CancelMatchRequest):
        if self.matchmaker.cancel_wait(connection_id):
            logger.info(f"Connection {connection_id} stopped looking for a match")
        return []

    def _send_offer(self, connection_id: str, request: SendOfferRequest):
        return self.relay.relay(events.OFFER, connection_id, request.target, request.offer)

    def _send_answer(self, connection_id: str, request: SendAnswerRequest):
        return self.relay.relay(events.ANSWER, connection_id, request.target, request.answer)

    def _send_ice_candidate(self, connection_id: str, request: SendIceCandidateRequest):
        return self.relay.relay(events.ICE_CANDIDATE, connection_id, request.target, request.candidate)

    def _end_call(self, connection_id: str, request: EndCallRequest):
        return self.relay.end_call(request.room_id, connection_id)


signaling_backend = SignalingBackend()
