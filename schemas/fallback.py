from typing import Any, Dict, List

from pydantic import Field

from schemas.peers import WireModel


class ProbeRequest(WireModel):
    session_id: str = Field(min_length=1, max_length=256)
    client_timestamp: float


class ProbeResponse(WireModel):
    session_id: str
    client_timestamp: float
    server_timestamp: float


class PollResponse(WireModel):
    session_id: str
    messages: List[Dict[str, Any]]


class SubmitRequest(WireModel):
    session_id: str = Field(min_length=1, max_length=256)
    messages: List[Dict[str, Any]] = Field(max_length=100)


class SubmitResponse(WireModel):
    accepted_count: int
