from typing import Optional

from fastapi import APIRouter, Query, Request

from logging_config import get_logger
from schemas.fallback import PollResponse, ProbeRequest, ProbeResponse, SubmitRequest, SubmitResponse

logger = get_logger(__name__)

fallback_router = APIRouter(prefix="/api/fallback", tags=["fallback"])


@fallback_router.post("/probe", response_model=ProbeResponse)
async def probe(body: ProbeRequest, request: Request):
    return ProbeResponse(**request.app.state.fallback.probe(body.session_id, body.client_timestamp))


@fallback_router.get("/poll", response_model=PollResponse)
async def poll(
    request: Request,
    session_id: str = Query(..., alias="sessionId", min_length=1, max_length=256),
    ack: Optional[str] = Query(None, description="Id of the last message received; it and everything before it are discarded"),
):
    messages = await request.app.state.fallback.poll(session_id, ack)
    return PollResponse(session_id=session_id, messages=messages)


@fallback_router.post("/submit", response_model=SubmitResponse)
async def submit(body: SubmitRequest, request: Request):
    accepted = await request.app.state.fallback.submit(body.session_id, body.messages)
    return SubmitResponse(accepted_count=accepted)
