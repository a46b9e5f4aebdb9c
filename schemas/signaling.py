from pydantic import BaseModel, Field
from typing import Any, Dict, Optional


class EventEnvelope(BaseModel):
    event: str = Field(min_length=1)
    data: Optional[Dict[str, Any]] = None


class FindRandomMatchRequest(BaseModel):
    pass

class CancelMatchRequest(BaseModel):
    pass

class SendOfferRequest(BaseModel):
    target: str = Field(min_length=1)
    offer: Any

class SendAnswerRequest(BaseModel):
    target: str = Field(min_length=1)
    answer: Any

class SendIceCandidateRequest(BaseModel):
    target: str = Field(min_length=1)
    candidate: Any

class EndCallRequest(BaseModel):
    room_id: str = Field(alias="roomId", min_length=1)


class HealthResponse(BaseModel):
    status: str

class StatsResponse(BaseModel):
    connections: int
    waiting: int
    active_rooms: int
