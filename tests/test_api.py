import asyncio
import time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from rafflehub.context import build_context
from rafflehub.database.models import Base
from rafflehub.database.session import build_engine, build_session_factory
from rafflehub.main import create_app
from rafflehub.services.payment_service import SimulatedGateway
from rafflehub.services.storage_service import LocalImageStorage

from conftest import ScriptedRandom

PNG = b"\x89PNG\r\n\x1a\n fake image"


async def _create_tables(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@pytest.fixture
def client(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
    asyncio.run(_create_tables(engine))

    context = build_context(
        session_factory=build_session_factory(engine),
        gateway=SimulatedGateway(timeout=5),
        random_source=ScriptedRandom(0),
        storage=LocalImageStorage(root=str(tmp_path / "media"), base_url="/media", app_id="test-app"),
    )
    with TestClient(create_app(context, prepare_database=False)) as test_client:
        yield test_client


def sign_up(client, email):
    response = client.post("/api/auth/signup", json={"email": email, "password": "secret1"})
    assert response.status_code == 201
    return {"Authorization": f"Bearer {response.json()['token']}"}


def create_raffle(client, headers, name="Signed guitar", ticket_price="10.00"):
    response = client.post(
        "/api/raffles",
        data={"name": name, "description": "Played live once", "ticket_price": ticket_price},
        files={"image": ("cover.png", PNG, "image/png")},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()["id"]


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_signup_conflict_and_login(client):
    sign_up(client, "dana@example.com")

    assert client.post(
        "/api/auth/signup", json={"email": "dana@example.com", "password": "secret1"}
    ).status_code == 409
    assert client.post(
        "/api/auth/login", json={"email": "dana@example.com", "password": "wrong-one"}
    ).status_code == 401
    assert client.post(
        "/api/auth/login", json={"email": "dana@example.com", "password": "secret1"}
    ).status_code == 200


def test_profile_requires_session(client):
    assert client.get("/api/profile").status_code == 401

    headers = sign_up(client, "dana@example.com")
    response = client.put("/api/profile", json={"display_name": "Dana", "bio": "Hi"}, headers=headers)

    assert response.status_code == 200
    assert client.get("/api/profile", headers=headers).json()["display_name"] == "Dana"


def test_create_raffle_validation(client):
    headers = sign_up(client, "dana@example.com")

    no_image = client.post(
        "/api/raffles", data={"name": "Bike", "ticket_price": "5"}, headers=headers,
    )
    bad_price = client.post(
        "/api/raffles",
        data={"name": "Bike", "ticket_price": "-1"},
        files={"image": ("bike.png", PNG, "image/png")},
        headers=headers,
    )

    assert no_image.status_code == 400
    assert bad_price.status_code == 400
    assert client.get("/api/raffles").json() == []


def test_purchase_and_draw_flow(client):
    creator = sign_up(client, "dana@example.com")
    alice = sign_up(client, "alice@example.com")
    bob = sign_up(client, "bob@example.com")
    raffle_id = create_raffle(client, creator)

    quote = client.get(f"/api/raffles/{raffle_id}/quote").json()
    assert quote == {"ticket_price": "10.00", "platform_fee": "0.30", "total": "10.30", "currency": "RUB"}

    purchase = client.post(f"/api/raffles/{raffle_id}/purchase", json={"payment_token": "tok"}, headers=alice)
    assert purchase.status_code == 201
    assert purchase.json()["amount_charged"] == "10.30"
    assert purchase.json()["status"] == "entered"

    declined = client.post(f"/api/raffles/{raffle_id}/purchase", json={"payment_token": "decline"}, headers=bob)
    cancelled = client.post(f"/api/raffles/{raffle_id}/purchase", json={}, headers=bob)
    assert declined.status_code == 402
    assert cancelled.status_code == 402

    assert client.post(f"/api/raffles/{raffle_id}/draw", headers=alice).status_code == 403

    draw = client.post(f"/api/raffles/{raffle_id}/draw", headers=creator)
    assert draw.status_code == 200
    assert draw.json()["winner"]["name"] == "alice@example.com"

    assert client.post(f"/api/raffles/{raffle_id}/draw", headers=creator).status_code == 409
    late = client.post(f"/api/raffles/{raffle_id}/purchase", json={"payment_token": "tok"}, headers=bob)
    assert late.status_code == 409

    view = client.get(f"/api/raffles/{raffle_id}", headers=creator).json()
    assert view["entrant_count"] == 1
    assert view["winner"]["user_id"] == purchase.json()["entry"]["user_id"]
    assert view["can_enter"] is False
    assert view["creator_profile"]["display_name"] == "dana@example.com"


def test_draw_without_entries_conflicts(client):
    creator = sign_up(client, "dana@example.com")
    raffle_id = create_raffle(client, creator)

    assert client.post(f"/api/raffles/{raffle_id}/draw", headers=creator).status_code == 409


def test_delete_raffle(client):
    creator = sign_up(client, "dana@example.com")
    other = sign_up(client, "erin@example.com")
    raffle_id = create_raffle(client, creator)

    assert client.delete(f"/api/raffles/{raffle_id}", headers=other).status_code == 403
    assert client.delete(f"/api/raffles/{raffle_id}", headers=creator).status_code == 204
    assert client.get(f"/api/raffles/{raffle_id}").status_code == 404
    assert client.delete(f"/api/raffles/{raffle_id}", headers=creator).status_code == 404


def test_list_shows_every_raffle(client):
    creator = sign_up(client, "dana@example.com")
    first = create_raffle(client, creator, name="First")
    second = create_raffle(client, creator, name="Second")

    listed = client.get("/api/raffles").json()

    assert {raffle["id"] for raffle in listed} == {first, second}
    assert all(raffle["creator_name"] == "dana@example.com" for raffle in listed)


def test_live_feed_pushes_changes(client):
    creator = sign_up(client, "dana@example.com")

    with client.websocket_connect("/api/raffles/live") as websocket:
        assert websocket.receive_json() == []

        raffle_id = create_raffle(client, creator)

        update = websocket.receive_json()
        assert [raffle["id"] for raffle in update] == [raffle_id]
        assert update[0]["entrant_count"] == 0


def test_quote_falls_back_to_last_known_list(client, monkeypatch):
    creator = sign_up(client, "dana@example.com")
    raffle_id = create_raffle(client, creator, ticket_price="20.00")
    context = client.app.state.context

    for _ in range(100):
        if any(record.id == raffle_id for record in context.view_state.snapshot):
            break
        time.sleep(0.01)

    async def unreachable(raffle_id):
        raise OperationalError("SELECT raffles", {}, Exception("database is locked"))

    monkeypatch.setattr(context.store, "get", unreachable)

    response = client.get(f"/api/raffles/{raffle_id}/quote")
    assert response.status_code == 200
    assert response.json()["total"] == "20.60"
    assert client.get("/api/raffles/unknown/quote").status_code == 404


def test_purchase_retry_with_same_key_is_not_charged_twice(client):
    creator = sign_up(client, "dana@example.com")
    alice = sign_up(client, "alice@example.com")
    raffle_id = create_raffle(client, creator)

    first = client.post(f"/api/raffles/{raffle_id}/purchase", json={"payment_token": "tok"}, headers=alice)
    key = first.json()["idempotence_key"]
    again = client.post(
        f"/api/raffles/{raffle_id}/purchase",
        json={"payment_token": "tok", "idempotence_key": key},
        headers=alice,
    )

    assert first.status_code == again.status_code == 201
    assert again.json()["idempotence_key"] == key
    assert again.json()["payment_id"] == first.json()["payment_id"]
    assert again.json()["entry"]["id"] == first.json()["entry"]["id"]
    assert client.get(f"/api/raffles/{raffle_id}").json()["entrant_count"] == 1
