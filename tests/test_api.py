import pytest
from fastapi.testclient import TestClient

from conftest import ADMIN_TOKEN, TOKENS, build_state, make_session
from src.server.api import create_app


def bearer(token):
    return {"Authorization": f"Bearer {token}"}

@pytest.fixture
def client(tmp_path):
    session = make_session(build_state(), tmp_path)
    with TestClient(create_app(session)) as c:
        yield c

def test_health(client):
    body = client.get("/").json()
    assert body["ok"] is True
    assert body["tick_number"] == 0

def test_tick_requires_admin(client):
    missing = client.post("/tick")
    assert missing.status_code == 401
    assert missing.json() == {"success": False, "error": "Unauthorized"}

    assert client.post("/tick", headers=bearer("nope")).status_code == 401
    assert client.post("/tick", headers=bearer(TOKENS["u-a"])).status_code == 403

def test_tick_returns_summary(client):
    response = client.post("/tick", headers=bearer(ADMIN_TOKEN))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["tick_number"] == 1
    assert body["summary"]["territories_processed"] == 2

    ticks = client.get("/ticks", params={"limit": 5}).json()["ticks"]
    assert [t["tick_number"] for t in ticks] == [1]
    assert ticks[0]["summary"]["territories_processed"] == 2

def test_order_lifecycle(client):
    order = {"listing_type": "sell", "resource_type": "food", "quantity": 40, "price_per_unit": 2.5,
             "territory_id": "t-a"}

    created = client.post("/orders", json=order, headers=bearer(TOKENS["u-a"]))
    assert created.status_code == 200
    listing = created.json()["listing"]
    assert listing["status"] == "open"
    assert listing["owner_user_id"] == "u-a"

    foreign = client.post(f"/orders/{listing['id']}/cancel", headers=bearer(TOKENS["u-b"]))
    assert foreign.status_code == 403

    cancelled = client.post(f"/orders/{listing['id']}/cancel", headers=bearer(TOKENS["u-a"]))
    assert cancelled.json()["listing"]["status"] == "cancelled"

def test_bad_orders_map_to_400(client):
    negative = {"listing_type": "buy", "resource_type": "food", "quantity": -1, "price_per_unit": 1.0,
                "territory_id": "t-b"}
    assert client.post("/orders", json=negative, headers=bearer(TOKENS["u-b"])).status_code == 400

    too_big = dict(negative, quantity=10_000)
    response = client.post("/orders", json=too_big, headers=bearer(TOKENS["u-b"]))
    assert response.status_code == 400
    assert response.json()["success"] is False

def test_orders_require_a_token(client):
    order = {"listing_type": "buy", "resource_type": "token_city", "quantity": 1, "price_per_unit": 1.0}
    assert client.post("/orders", json=order).status_code == 401
