import uuid
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class Peer(WireModel):
    id: str
    name: str
    glyph: str = ""
    color: str = ""
    online: bool = False
    session_id: Optional[str] = None
    room_id: Optional[str] = None
    last_seen: float = 0.0

    def to_redis(self) -> Dict[str, str]:
        """Flatten into string fields for a Redis hash, skipping None values."""
        data = {
            "id": self.id,
            "name": self.name,
            "glyph": self.glyph,
            "color": self.color,
            "online": "1" if self.online else "0",
            "last_seen": repr(self.last_seen),
        }
        if self.session_id:
            data["session_id"] = self.session_id
        if self.room_id:
            data["room_id"] = self.room_id
        return data

    @classmethod
    def from_redis(cls, data: Dict[str, str]) -> Optional["Peer"]:
        # A hash missing its id was half-written or half-expired
        if not data or not data.get("id"):
            return None
        try:
            last_seen = float(data.get("last_seen") or 0)
        except ValueError:
            last_seen = 0.0
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            glyph=data.get("glyph", ""),
            color=data.get("color", ""),
            online=data.get("online") == "1",
            session_id=data.get("session_id") or None,
            room_id=data.get("room_id") or None,
            last_seen=last_seen,
        )


class PendingKind(str, Enum):
    SIGNAL = "signal"
    TRANSFER_REQUEST = "transfer-request"


class PendingRequest(WireModel):
    request_id: str
    sender_id: str
    receiver_id: str
    kind: PendingKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: float
    expires_at: float

    @classmethod
    def create(cls, sender_id: str, receiver_id: str, kind: PendingKind, payload: Dict[str, Any], ttl: float, now: float) -> "PendingRequest":
        return cls(
            request_id=f"{kind.value}-{uuid.uuid4().hex}",
            sender_id=sender_id,
            receiver_id=receiver_id,
            kind=kind,
            payload=payload,
            created_at=now,
            expires_at=now + ttl,
        )

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

