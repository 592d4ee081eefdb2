REDIS_PEER_KEY = "peer:{peer_id}" # peer id - hash of peer record fields
REDIS_PEER_SCAN = "peer:*"
REDIS_SESSION_KEY = "session:{session_id}" # transport session id - peer id bound to it
REDIS_ROOM_PEERS_KEY = "room:{room_id}:peers" # room id - set of peer ids
REDIS_PENDING_KEY = "pending:{receiver_id}" # receiver peer id - hash of request id -> request json
REDIS_PENDING_EXPIRY_KEY = "pending:expiry" # sorted set of "{receiver_id}|{request_id}" scored by expires_at

# **Example `peer:{id}` hash fields**
# - `id` = `{peerId}` (client supplied, stable across reconnects)
# - `name`, `glyph`, `color` = display data
# - `online` = "1" | "0"
# - `session_id` = transport session currently bound to the peer
# - `room_id` = room the peer last joined (absent when none)
# - `last_seen` = epoch seconds of last activity


def pending_index_member(receiver_id: str, request_id: str) -> str:
    return f"{receiver_id}|{request_id}"


def split_pending_index_member(member: str):
    # request ids never contain "|", peer ids might
    receiver_id, _, request_id = member.rpartition("|")
    return receiver_id, request_id
