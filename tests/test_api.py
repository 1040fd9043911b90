import pytest
from fastapi.testclient import TestClient

from api import build_services, create_app
from tests.conftest import ManualScheduler


@pytest.fixture
def services(db_path, config_provider, clock):
    services = build_services(
        db_path,
        config_provider=config_provider,
        scheduler=ManualScheduler(clock),
        clock=clock,
        cooldown_seconds=10,
    )
    for user in ("alice", "bob"):
        services.ledger.open_account(user, display_name=user.title(), initial_balance=1000)
    return services


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as client:
        yield client


def headers(user, **extra):
    data = {"X-Bettor-Id": user, "X-Display-Name": user.title()}
    data.update(extra)
    return data


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_list_rooms(client):
    rooms = client.get("/api/rooms").json()

    assert {r["room_id"] for r in rooms} == {"classic", "spin", "auction", "lottery"}
    for room in rooms:
        assert room["round"]["status"] in ("open", "closing")
        assert "default_client_seed" not in room["config"]


def test_current_round_hides_server_seed(client):
    data = client.get("/api/rooms/classic/round").json()

    assert data["round_id"] == "classic-1"
    assert data["server_seed"] is None
    assert len(data["hashed_server_seed"]) == 64


def test_unknown_room(client):
    response = client.get("/api/rooms/nowhere/round")
    assert response.status_code == 404
    assert response.json()["error"] == "RoomNotFound"


def test_place_bet(client):
    response = client.post("/api/rooms/classic/bets", json={"amount": 10}, headers=headers("alice"))

    assert response.status_code == 200
    data = response.json()
    assert data["stake"]["amount"] == 10
    assert data["balance"] == 990
    assert data["round"]["pot"] == 10
    assert data["round"]["participants"][0]["display_name"] == "Alice"


def test_place_bet_requires_identity(client):
    response = client.post("/api/rooms/classic/bets", json={"amount": 10})
    assert response.status_code == 401


@pytest.mark.parametrize("room,body,error", [
    ("classic", {"amount": 0}, "BelowMinimum"),
    ("classic", {"amount": 500}, "AboveMaximum"),
    ("lottery", {"amount": 10, "field_number": 30}, "InvalidField"),
    ("auction", {"amount": 20}, "AboveMaximum"),
])
def test_rejected_bets(client, room, body, error):
    response = client.post(f"/api/rooms/{room}/bets", json=body, headers=headers("alice"))

    assert response.status_code == 400
    assert response.json()["error"] == error


def test_unfunded_bettor(client):
    response = client.post("/api/rooms/classic/bets", json={"amount": 10}, headers=headers("stranger"))

    assert response.status_code == 400
    assert response.json()["error"] == "InsufficientFunds"


def test_suspended_bettor(client, clock):
    until = clock().replace(year=2030).isoformat()
    response = client.post(
        "/api/rooms/classic/bets",
        json={"amount": 10},
        headers=headers("alice", **{"X-Gaming-Suspended-Until": until}),
    )

    assert response.status_code == 400
    assert response.json()["error"] == "GamingSuspended"


def test_bad_suspension_header(client):
    response = client.post(
        "/api/rooms/classic/bets",
        json={"amount": 10},
        headers=headers("alice", **{"X-Gaming-Suspended-Until": "soon"}),
    )
    assert response.status_code == 400


def test_client_seed(client):
    assert client.post("/api/rooms/classic/client-seed", json={"client_seed": "abc"}).status_code == 401

    response = client.post("/api/rooms/classic/client-seed", json={"client_seed": "abc"}, headers=headers("bob"))
    assert response.status_code == 200
    assert response.json() == {"round_id": "classic-1", "client_seed": "abc"}

    response = client.post("/api/rooms/classic/client-seed", json={"client_seed": "x" * 65}, headers=headers("bob"))
    assert response.status_code == 400
    assert response.json()["error"] == "InvalidClientSeed"


def test_finished_round_audit_and_verify(client, services):
    client.post("/api/rooms/classic/bets", json={"amount": 10}, headers=headers("alice"))
    client.post("/api/rooms/classic/bets", json={"amount": 30}, headers=headers("bob"))
    client.portal.call(services.registry.get("classic").resolve)

    audit = client.get("/api/rounds/classic-1/audit").json()
    assert audit["pot"] == 40
    assert audit["commission"] == 2

    verify = client.get("/api/rounds/classic-1/verify").json()
    assert verify["is_fair"] is True
    assert verify["server_seed"] == audit["server_seed"]

    events = client.get("/api/rounds/classic-1/events").json()["events"]
    assert events[-1]["event_type"] == "round_resolved"

    current = client.get("/api/rooms/classic/round").json()
    assert current["status"] == "finished"
    assert current["server_seed"] == audit["server_seed"]


def test_audit_of_unknown_round(client):
    assert client.get("/api/rounds/classic-99/audit").status_code == 404
    assert client.get("/api/rounds/classic-99/verify").status_code == 404
    assert client.get("/api/rounds/classic-99/events").status_code == 404


def test_account(client):
    client.post("/api/rooms/classic/bets", json={"amount": 25}, headers=headers("alice"))

    data = client.get("/api/accounts/alice").json()
    assert data["balance"] == 975
    assert [t["kind"] for t in data["transactions"]][:1] == ["bet"]

    assert client.get("/api/accounts/ghost").status_code == 404


def test_websocket_receives_state_and_events(client):
    with client.websocket_connect("/ws/classic") as websocket:
        first = websocket.receive_json()
        assert first["event"] == "round_state"
        assert first["data"]["round_id"] == "classic-1"

        client.post("/api/rooms/classic/bets", json={"amount": 10}, headers=headers("alice"))

        message = websocket.receive_json()
        assert message["event"] == "bet_accepted"
        assert message["room_id"] == "classic"
        assert message["data"]["amount"] == 10
