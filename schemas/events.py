from typing import Annotated, Any, Dict, List, Literal, Union

from pydantic import Field, TypeAdapter, ValidationError

from errors import MalformedInputError
from schemas.peers import Peer, WireModel

NonEmptyStr = Annotated[str, Field(min_length=1, max_length=256)]
DisplayStr = Annotated[str, Field(max_length=256)]


# Inbound events (client -> relay)

class JoinEvent(WireModel):
    event: Literal["join"]
    room: NonEmptyStr
    peer_id: NonEmptyStr
    name: DisplayStr
    color: DisplayStr
    glyph: DisplayStr


class UpdateProfileEvent(WireModel):
    event: Literal["update-profile"]
    name: DisplayStr
    color: DisplayStr
    glyph: DisplayStr


class SignalEvent(WireModel):
    event: Literal["signal"]
    to_peer_id: NonEmptyStr
    from_peer_id: NonEmptyStr
    envelope: Dict[str, Any]


class TransferRequestEvent(WireModel):
    event: Literal["transfer-request"]
    to_peer_id: NonEmptyStr
    from_peer_id: NonEmptyStr
    metadata: Dict[str, Any]


class PullPendingEvent(WireModel):
    event: Literal["pull-pending"]


class PingEvent(WireModel):
    event: Literal["ping"]


InboundEvent = Annotated[
    Union[JoinEvent, UpdateProfileEvent, SignalEvent, TransferRequestEvent, PullPendingEvent, PingEvent],
    Field(discriminator="event"),
]

_inbound_adapter = TypeAdapter(InboundEvent)


def _error_details(exc: ValidationError) -> List[dict]:
    return [
        {
            "field": ".".join(str(loc) for loc in e["loc"]),
            "message": e["msg"],
            "type": e["type"],
        }
        for e in exc.errors()
    ]


def parse_inbound(raw: Any):
    """Validate a decoded inbound payload into its tagged event model."""
    if not isinstance(raw, dict):
        raise MalformedInputError("Event payload must be a JSON object")
    try:
        return _inbound_adapter.validate_python(raw)
    except ValidationError as e:
        raise MalformedInputError(f"Invalid '{raw.get('event', 'unknown')}' event", details=_error_details(e)) from e


# Outbound events (relay -> client)

def room_snapshot(peers: List[Peer]) -> dict:
    return {"event": "room-snapshot", "peers": [p.to_wire() for p in peers]}


def peer_joined(peer: Peer) -> dict:
    return {"event": "peer-joined", "peer": peer.to_wire()}


def peer_left(peer_id: str) -> dict:
    return {"event": "peer-left", "peerId": peer_id}


def signal(from_peer_id: str, envelope: Dict[str, Any]) -> dict:
    return {"event": "signal", "fromPeerId": from_peer_id, "envelope": envelope}


def incoming_transfer_request(from_peer_id: str, metadata: Dict[str, Any]) -> dict:
    return {"event": "incoming-transfer-request", "fromPeerId": from_peer_id, "metadata": metadata}


def pong(timestamp: float) -> dict:
    return {"event": "pong", "timestamp": timestamp}
