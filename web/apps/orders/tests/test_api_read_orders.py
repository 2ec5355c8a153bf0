"""API tests for reading orders: list with filter and pagination, detail."""
import pytest

LIST_URL = "/api/orders/"


@pytest.mark.django_db
def test_ping(client):
    r = client.get("/api/orders/ping/")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


@pytest.mark.django_db
def test_list_orders_paginated(place, client):
    ids = {place("cod").json()["orderId"] for _ in range(3)}

    r = client.get(LIST_URL, {"user_id": "user-1", "page_size": 2})
    assert r.status_code == 200
    body = r.json()
    assert body["count"] == 3
    assert body["page"] == 1
    assert len(body["results"]) == 2
    row = body["results"][0]
    assert set(row) >= {"orderId", "userId", "status", "paymentStatus", "paymentMethod", "total"}
    assert row["total"] == 522

    page2 = client.get(LIST_URL, {"user_id": "user-1", "page_size": 2, "page": 2}).json()
    assert {r["orderId"] for r in body["results"] + page2["results"]} == ids


@pytest.mark.django_db
def test_list_orders_filters_by_user(place, client):
    place("cod")
    r = client.get(LIST_URL, {"user_id": "someone-else"})
    assert r.json()["count"] == 0


@pytest.mark.django_db
def test_list_orders_bad_pagination(client):
    r = client.get(LIST_URL, {"page": "x"})
    assert r.status_code == 400
    assert r.json()["detail"] == "INVALID_PAGINATION"


@pytest.mark.django_db
def test_retrieve_order_document(place, client):
    order_id = place("cod").json()["orderId"]
    r = client.get(f"/api/orders/{order_id}/")
    assert r.status_code == 200
    doc = r.json()
    assert doc["schemaVersion"] == 2
    assert doc["orderId"] == order_id
    assert doc["status"] == "confirmed"
    assert doc["items"][0]["productId"] == "P1"
    assert doc["address"]["postalCode"] == "560001"
    assert doc["customer"]["name"] == "Asha Rao"


@pytest.mark.django_db
def test_retrieve_unknown_order(client):
    r = client.get("/api/orders/ORD-0-NOPE00/")
    assert r.status_code == 404
    assert r.json()["detail"] == "NOT_FOUND"
