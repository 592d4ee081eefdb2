import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from app import create_app

JOIN_ALICE = {"event": "join", "room": "jungle", "peerId": "alice", "name": "Alice", "color": "#f5a623", "glyph": "🦁"}
JOIN_BOB = {"event": "join", "room": "jungle", "peerId": "bob", "name": "Bob", "color": "#4a90e2", "glyph": "🐯"}


@pytest.fixture
def client(redis_client):
    app = create_app(redis_client=redis_client, start_reaper=False)
    with TestClient(app) as c:
        yield c


class TestAdminEndpoints:

    def test_root_banner(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_health_reports_connected_store(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["redis"] == "connected"
        assert data["storeFailures"] == 0

    def test_health_fails_when_store_unreachable(self, client, redis_client, monkeypatch):
        def boom(*args, **kwargs):
            raise RedisConnectionError("connection refused")

        monkeypatch.setattr(redis_client, "ping", boom)

        response = client.get("/api/health")

        assert response.status_code == 503
        assert response.json()["redis"] == "disconnected"

    def test_room_and_peer_lookup(self, client):
        client.post("/api/fallback/submit", json={"sessionId": "fb-alice", "messages": [JOIN_ALICE]})

        room = client.get("/api/rooms/jungle/peers").json()
        assert room["roomId"] == "jungle"
        assert room["count"] == 1
        assert room["peers"][0]["id"] == "alice"

        peer = client.get("/api/peers/alice").json()
        assert peer["online"] is True
        assert peer["sessionId"] == "fb-alice"

        assert client.get("/api/peers").json()["count"] == 1

    def test_unknown_peer_is_404(self, client):
        response = client.get("/api/peers/nobody")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "PEER_NOT_FOUND"

    def test_store_failure_on_admin_read_is_503(self, client, redis_client, monkeypatch):
        def boom(*args, **kwargs):
            raise RedisConnectionError("connection refused")

        monkeypatch.setattr(redis_client, "smembers", boom)

        response = client.get("/api/rooms/jungle/peers")

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "STORE_UNAVAILABLE"

    def test_manual_cleanup_with_nothing_to_do(self, client):
        response = client.post("/api/cleanup")

        assert response.status_code == 200
        data = response.json()
        assert data["totalRemoved"] == 0
        assert data["errors"] == []

    def test_stats_count_fallback_sessions(self, client):
        client.get("/api/fallback/poll", params={"sessionId": "fb-1"})

        stats = client.get("/api/stats").json()

        assert stats["totalConnections"] == 1
        assert stats["connectionsByTransport"] == {"fallback": 1}


class TestFallbackChannel:

    def test_probe_echoes_client_timestamp(self, client):
        response = client.post("/api/fallback/probe", json={"sessionId": "fb-1", "clientTimestamp": 1234.5})

        assert response.status_code == 200
        data = response.json()
        assert data["sessionId"] == "fb-1"
        assert data["clientTimestamp"] == 1234.5
        assert data["serverTimestamp"] > 0

    def test_probe_does_not_open_a_session(self, client):
        client.post("/api/fallback/probe", json={"sessionId": "fb-1", "clientTimestamp": 1.0})

        assert client.get("/api/stats").json()["totalConnections"] == 0

    def test_submit_join_then_poll_snapshot(self, client):
        response = client.post("/api/fallback/submit", json={"sessionId": "fb-alice", "messages": [JOIN_ALICE]})
        assert response.json() == {"acceptedCount": 1}

        data = client.get("/api/fallback/poll", params={"sessionId": "fb-alice"}).json()

        assert data["sessionId"] == "fb-alice"
        assert [m["event"] for m in data["messages"]] == ["room-snapshot"]
        assert data["messages"][0]["id"]
        assert data["messages"][0]["peers"][0]["id"] == "alice"

    def test_unacknowledged_messages_are_redelivered(self, client):
        client.post("/api/fallback/submit", json={"sessionId": "fb-alice", "messages": [JOIN_ALICE, {"event": "ping"}]})

        first = client.get("/api/fallback/poll", params={"sessionId": "fb-alice"}).json()["messages"]
        again = client.get("/api/fallback/poll", params={"sessionId": "fb-alice"}).json()["messages"]
        assert [m["id"] for m in again] == [m["id"] for m in first]

        acked = client.get("/api/fallback/poll", params={"sessionId": "fb-alice", "ack": first[0]["id"]}).json()["messages"]
        assert [m["event"] for m in acked] == ["pong"]

        done = client.get("/api/fallback/poll", params={"sessionId": "fb-alice", "ack": first[-1]["id"]}).json()["messages"]
        assert done == []

    def test_malformed_messages_are_skipped(self, client):
        messages = [{"event": "ping"}, {"event": "join", "room": "jungle"}, {"event": "nope"}]

        response = client.post("/api/fallback/submit", json={"sessionId": "fb-1", "messages": messages})

        assert response.json() == {"acceptedCount": 1}
        assert client.get("/api/peers").json()["count"] == 0

    def test_submit_without_session_id_is_rejected(self, client):
        response = client.post("/api/fallback/submit", json={"messages": []})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "MALFORMED_INPUT"

    def test_poll_requires_session_id(self, client):
        assert client.get("/api/fallback/poll").status_code == 400

    def test_signal_between_fallback_sessions(self, client):
        client.post("/api/fallback/submit", json={"sessionId": "fb-alice", "messages": [JOIN_ALICE]})
        client.post("/api/fallback/submit", json={"sessionId": "fb-bob", "messages": [JOIN_BOB]})
        signal = {"event": "signal", "toPeerId": "bob", "fromPeerId": "alice", "envelope": {"type": "offer", "sdp": "v=0"}}

        client.post("/api/fallback/submit", json={"sessionId": "fb-alice", "messages": [signal]})

        bob_messages = client.get("/api/fallback/poll", params={"sessionId": "fb-bob"}).json()["messages"]
        assert bob_messages[-1]["event"] == "signal"
        assert bob_messages[-1]["fromPeerId"] == "alice"
        alice_messages = client.get("/api/fallback/poll", params={"sessionId": "fb-alice"}).json()["messages"]
        assert [m["event"] for m in alice_messages] == ["room-snapshot", "peer-joined"]


class TestWebSocket:

    def test_join_receives_snapshot(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json(JOIN_ALICE)
            message = ws.receive_json()

        assert message["event"] == "room-snapshot"
        assert [p["id"] for p in message["peers"]] == ["alice"]

    def test_malformed_frame_gets_error_and_session_survives(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text("{not json")
            error = ws.receive_json()
            ws.send_json({"event": "join", "room": "jungle"})
            invalid = ws.receive_json()
            ws.send_json({"event": "ping"})
            pong = ws.receive_json()

        assert error["event"] == "error"
        assert error["code"] == "MALFORMED_INPUT"
        assert invalid["code"] == "MALFORMED_INPUT"
        assert invalid["details"]
        assert pong["event"] == "pong"

    def test_join_signal_and_leave_between_two_clients(self, client):
        with client.websocket_connect("/ws") as alice:
            alice.send_json(JOIN_ALICE)
            assert alice.receive_json()["event"] == "room-snapshot"

            with client.websocket_connect("/ws") as bob:
                bob.send_json(JOIN_BOB)
                snapshot = bob.receive_json()
                assert sorted(p["id"] for p in snapshot["peers"]) == ["alice", "bob"]

                joined = alice.receive_json()
                assert joined["event"] == "peer-joined"
                assert joined["peer"]["id"] == "bob"

                bob.send_json({"event": "signal", "toPeerId": "alice", "fromPeerId": "bob", "envelope": {"type": "offer"}})
                signal = alice.receive_json()
                assert signal == {"event": "signal", "fromPeerId": "bob", "envelope": {"type": "offer"}}

            left = alice.receive_json()
            assert left == {"event": "peer-left", "peerId": "bob"}

        peer = client.get("/api/peers/bob").json()
        assert peer["online"] is False

    def test_websocket_peer_receives_signal_queued_over_fallback(self, client):
        signal = {"event": "signal", "toPeerId": "bob", "fromPeerId": "alice", "envelope": {"type": "answer"}}
        client.post("/api/fallback/submit", json={"sessionId": "fb-alice", "messages": [JOIN_ALICE, signal]})

        with client.websocket_connect("/ws") as bob:
            bob.send_json(JOIN_BOB)
            replayed = bob.receive_json()
            snapshot = bob.receive_json()

        assert replayed == {"event": "signal", "fromPeerId": "alice", "envelope": {"type": "answer"}}
        assert snapshot["event"] == "room-snapshot"
