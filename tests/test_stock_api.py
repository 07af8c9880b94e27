from stockledger.main import app
from stockledger.models.product import Product
from stockledger.services import transfer_service


def _create_location(client, headers, name: str, **extra) -> str:
    res = client.post("/locations", json={"name": name, **extra}, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()["id"]


def _adjust(client, headers, product_id: str, location_id: str, **body):
    return client.post(
        "/stock/adjust",
        json={"product_id": product_id, "location_id": location_id, **body},
        headers=headers,
    )


def test_adjust_reserve_and_read_entry(test_context, headers):
    client, _ = test_context
    location_id = _create_location(client, headers, "Store")

    res = _adjust(client, headers, "prod-1", location_id, quantityChange=50, reason="Delivery")
    assert res.status_code == 200, res.text
    assert res.json()["quantity"] == 50

    res = _adjust(client, headers, "prod-1", location_id, reservedChange=10, type="RESERVATION")
    assert res.status_code == 200, res.text
    body = res.json()
    assert (body["quantity"], body["reserved"], body["available"]) == (50, 10, 40)
    assert body["version"] == 2

    entry = client.get(f"/stock/entries/prod-1/{location_id}", headers=headers)
    assert entry.status_code == 200, entry.text
    assert entry.json()["available"] == 40

    untouched = client.get(f"/stock/entries/prod-9/{location_id}", headers=headers)
    assert untouched.status_code == 200, untouched.text
    assert untouched.json()["id"] is None
    assert untouched.json()["quantity"] == 0


def test_oversell_returns_conflict_envelope(test_context, headers):
    client, _ = test_context
    location_id = _create_location(client, headers, "Store")
    _adjust(client, headers, "prod-1", location_id, quantity_change=40, reserved_change=10)

    res = _adjust(client, headers, "prod-1", location_id, quantity_change=-45)
    assert res.status_code == 409, res.text
    error = res.json()["error"]
    assert error["code"] == "insufficient_stock"
    assert error["path"] == "/stock/adjust"
    assert error["request_id"] == res.headers["X-Request-ID"]
    assert error["details"]["key"]["location_id"] == location_id
    assert error["details"]["requested"] == {"quantity_change": -45, "reserved_change": 0}
    assert error["details"]["current"]["quantity"] == 40

    entry = client.get(f"/stock/entries/prod-1/{location_id}", headers=headers).json()
    assert (entry["quantity"], entry["reserved"]) == (40, 10)


def test_adjust_request_validation(test_context, headers):
    client, _ = test_context
    location_id = _create_location(client, headers, "Store")

    res = _adjust(client, headers, "prod-1", location_id)
    assert res.status_code == 422, res.text
    assert res.json()["error"]["code"] == "validation_error"

    res = _adjust(client, headers, "prod-1", location_id, quantity_change=1, type="TRANSFER_IN")
    assert res.status_code == 422, res.text

    res = _adjust(client, headers, "prod-1", location_id, quantity_change=1, metadata={"nested": {"a": 1}})
    assert res.status_code == 422, res.text


def test_unknown_and_inactive_location_statuses(test_context, headers):
    client, _ = test_context
    res = _adjust(client, headers, "prod-1", "missing", quantity_change=1)
    assert res.status_code == 404, res.text
    assert res.json()["error"]["code"] == "location_not_found"

    location_id = _create_location(client, headers, "Closed")
    client.patch(f"/locations/{location_id}", json={"is_active": False}, headers=headers)
    res = _adjust(client, headers, "prod-1", location_id, quantity_change=1)
    assert res.status_code == 422, res.text
    assert res.json()["error"]["code"] == "location_inactive"


def test_unlimited_entry_reports_no_count(test_context, headers):
    client, _ = test_context
    location_id = _create_location(client, headers, "Downloads", type="DIGITAL")

    res = _adjust(client, headers, "ebook", location_id, quantity_change=-1000, is_unlimited=True, type="SALE")
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["is_unlimited"] is True
    assert body["quantity"] is None
    assert body["available"] is None
    assert body["ledger_quantity"] == -1000

    replay = client.get(f"/stock/movements/replay/ebook/{location_id}", headers=headers)
    assert replay.status_code == 200, replay.text
    assert replay.json()["replayed_quantity"] == -1000
    assert replay.json()["consistent"] is True


def test_toggle_unlimited_endpoint(test_context, headers):
    client, _ = test_context
    location_id = _create_location(client, headers, "Store")
    _adjust(client, headers, "prod-1", location_id, quantity_change=2)

    res = client.post(
        "/stock/unlimited",
        json={"productId": "prod-1", "locationId": location_id, "isUnlimited": True},
        headers=headers,
    )
    assert res.status_code == 200, res.text
    assert res.json()["is_unlimited"] is True
    assert res.json()["ledger_quantity"] == 2

    movements = client.get("/stock/movements", headers=headers).json()
    assert movements["cursor"]["count"] == 1


def test_set_levels_endpoint(test_context, headers):
    client, _ = test_context
    location_id = _create_location(client, headers, "Store")
    _adjust(client, headers, "prod-1", location_id, quantity_change=9)

    res = client.post(
        "/stock/set",
        json={"product_id": "prod-1", "location_id": location_id, "quantity": 4, "reason": "Count"},
        headers=headers,
    )
    assert res.status_code == 200, res.text
    assert res.json()["quantity"] == 4

    res = client.post(
        "/stock/set",
        json={"product_id": "prod-1", "location_id": location_id, "quantity": 4},
        headers=headers,
    )
    assert res.status_code == 400, res.text
    assert res.json()["error"]["code"] == "stock_validation_error"

    res = client.post("/stock/set", json={"product_id": "prod-1", "location_id": location_id}, headers=headers)
    assert res.status_code == 422, res.text


def test_bulk_adjust_reports_each_item(test_context, headers):
    client, _ = test_context
    location_id = _create_location(client, headers, "Store")

    res = client.post(
        "/stock/adjust/bulk",
        json={
            "items": [
                {"product_id": "prod-1", "location_id": location_id, "quantity_change": 5},
                {"product_id": "prod-2", "location_id": location_id, "quantity_change": -5},
                {"product_id": "prod-3", "location_id": "missing", "quantity_change": 1},
            ]
        },
        headers=headers,
    )
    assert res.status_code == 200, res.text
    body = res.json()
    assert (body["succeeded"], body["failed"]) == (1, 2)
    first, second, third = body["items"]
    assert first["ok"] is True
    assert first["entry"]["quantity"] == 5
    assert second["error_code"] == "insufficient_stock"
    assert third["error_code"] == "location_not_found"


def test_transfer_endpoint(test_context, headers):
    client, _ = test_context
    source = _create_location(client, headers, "Warehouse")
    destination = _create_location(client, headers, "Store")
    _adjust(client, headers, "prod-1", source, quantity_change=40)

    res = client.post(
        "/stock/transfers",
        json={"productId": "prod-1", "fromLocationId": source, "toLocationId": destination, "quantity": 40},
        headers=headers,
    )
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["source"]["quantity"] == 0
    assert body["destination"]["quantity"] == 40
    assert [(m["type"], m["quantity_change"]) for m in body["movements"]] == [
        ("TRANSFER_OUT", -40),
        ("TRANSFER_IN", 40),
    ]
    assert {m["reference_id"] for m in body["movements"]} == {body["transfer_id"]}


def test_transfer_request_validation(test_context, headers):
    client, _ = test_context
    source = _create_location(client, headers, "Warehouse")
    destination = _create_location(client, headers, "Store")

    res = client.post(
        "/stock/transfers",
        json={"product_id": "prod-1", "from_location_id": source, "to_location_id": destination, "quantity": 0},
        headers=headers,
    )
    assert res.status_code == 422, res.text

    res = client.post(
        "/stock/transfers",
        json={"product_id": "prod-1", "from_location_id": source, "to_location_id": source, "quantity": 1},
        headers=headers,
    )
    assert res.status_code == 422, res.text

    res = client.post(
        "/stock/transfers",
        json={"product_id": "prod-1", "from_location_id": source, "to_location_id": destination, "quantity": 1},
        headers=headers,
    )
    assert res.status_code == 409, res.text
    assert res.json()["error"]["code"] == "insufficient_stock"


def test_transfer_partial_failure_envelope(test_context, headers, monkeypatch):
    client, _ = test_context
    source = _create_location(client, headers, "Warehouse")
    destination = _create_location(client, headers, "Store")
    _adjust(client, headers, "prod-1", source, quantity_change=10)
    real_apply = transfer_service.apply_adjustment

    def failing_credit(db, **kwargs):
        if kwargs.get("movement_type") == "TRANSFER_IN" and not kwargs.get("is_compensation"):
            raise RuntimeError("credit failed")
        return real_apply(db, **kwargs)

    monkeypatch.setattr(transfer_service, "apply_adjustment", failing_credit)

    res = client.post(
        "/stock/transfers",
        json={"product_id": "prod-1", "from_location_id": source, "to_location_id": destination, "quantity": 3},
        headers=headers,
    )
    assert res.status_code == 500, res.text
    error = res.json()["error"]
    assert error["code"] == "transfer_partial_failure"
    assert error["details"]["compensated"] is True
    assert error["details"]["compensation_movement_id"]

    entry = client.get(f"/stock/entries/prod-1/{source}", headers=headers).json()
    assert entry["quantity"] == 10


def test_product_views(test_context, headers):
    client, session_local = test_context
    with session_local() as db:
        db.add_all(
            [
                Product(id="p-1", tenant_id="tenant-a", name="Beans", product_code="B-1"),
                Product(id="p-2", tenant_id="tenant-a", name="Cups"),
            ]
        )
        db.commit()
    warehouse = _create_location(client, headers, "Warehouse", is_default=True)
    store = _create_location(client, headers, "Store")
    _adjust(client, headers, "p-1", warehouse, quantity_change=8, reserved_change=2)
    _adjust(client, headers, "p-1", store, quantity_change=3)

    res = client.get("/stock/products/p-1", headers=headers)
    assert res.status_code == 200, res.text
    body = res.json()
    assert (body["quantity"], body["reserved"], body["available"]) == (11, 2, 9)
    assert [e["location"]["name"] for e in body["entries"]] == ["Warehouse", "Store"]

    res = client.get("/stock/products", headers=headers)
    assert res.status_code == 200, res.text
    items = res.json()["items"]
    assert [item["name"] for item in items] == ["Beans", "Cups"]
    assert len(items[0]["stocks"]) == 2
    assert items[1]["stocks"] == []


def test_movement_listing_and_cursor(test_context, headers):
    client, _ = test_context
    location_id = _create_location(client, headers, "Store")
    for _ in range(5):
        _adjust(client, headers, "prod-1", location_id, quantity_change=1)

    first = client.get("/stock/movements", params={"limit": 2}, headers=headers)
    assert first.status_code == 200, first.text
    page = first.json()
    assert [m["entry_version"] for m in page["items"]] == [5, 4]
    assert page["cursor"]["has_next"] is True
    assert page["items"][0]["location_name"] == "Store"
    assert page["items"][0]["performed_by"] == "user-1"

    second = client.get(
        "/stock/movements",
        params={"limit": 2, "before_id": page["cursor"]["next_before_id"]},
        headers=headers,
    ).json()
    assert [m["entry_version"] for m in second["items"]] == [3, 2]

    res = client.get("/stock/movements", params={"movement_type": "LOST"}, headers=headers)
    assert res.status_code == 422, res.text

    res = client.get("/stock/movements", params={"before_id": "missing"}, headers=headers)
    assert res.status_code == 400, res.text


def test_health_and_ready(test_context):
    client, _ = test_context
    assert client.get("/health").json() == {"ok": True}
    assert client.get("/ready").json() == {"ok": True}


def test_openapi_lists_every_route():
    paths = set(app.openapi()["paths"].keys())
    assert {
        "/locations",
        "/locations/{location_id}",
        "/stock/adjust",
        "/stock/adjust/bulk",
        "/stock/set",
        "/stock/unlimited",
        "/stock/transfers",
        "/stock/entries/{product_id}/{location_id}",
        "/stock/products",
        "/stock/products/{product_id}",
        "/stock/movements",
        "/stock/movements/replay/{product_id}/{location_id}",
        "/health",
        "/ready",
    } <= paths
