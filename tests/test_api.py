from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from marketplace_engine.main import EngineServices, app, get_services

DIMENSIONS = {"width": 50, "depth": 50, "height": 80}


@pytest.fixture
def client(store):
    engine = EngineServices(store=store)
    app.dependency_overrides[get_services] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


def approved_product(client, designer_id="designer-1", base_price="50000", selling_price="75000"):
    product = client.post("/listings", json={"designer_id": designer_id, "category": "chairs",
                                             "dimensions": DIMENSIONS}).json()
    client.put(f"/listings/{product['id']}/price",
               json={"base_price": base_price, "selling_price": selling_price})
    response = client.post(f"/listings/{product['id']}/approve")
    assert response.status_code == 200
    return response.json()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_price_quote(client):
    response = client.post("/pricing/quote", json={"category": "tables",
                                                   "dimensions": {"width": 100, "depth": 50, "height": 80}})
    assert response.status_code == 200
    body = response.json()
    assert Decimal(body["base_price"]) == Decimal("60000")
    assert Decimal(body["selling_price"]) == Decimal("72000")


def test_unknown_category_is_validation_error(client):
    response = client.post("/pricing/quote", json={"category": "rockets", "dimensions": DIMENSIONS})
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


def test_listing_lifecycle(client):
    created = client.post("/listings", json={"designer_id": "designer-1", "category": "chairs",
                                             "dimensions": DIMENSIONS, "name": "Lounge"})
    assert created.status_code == 201
    product_id = created.json()["id"]

    updated = client.put(f"/listings/{product_id}/price", json={"base_price": "40000"})
    assert Decimal(updated.json()["selling_price"]) == Decimal("48000")

    assert client.post(f"/listings/{product_id}/approve").json()["status"] == "approved"

    frozen = client.put(f"/listings/{product_id}/price", json={"base_price": "30000"})
    assert frozen.status_code == 409
    assert frozen.json()["error"] == "conflict"


def test_unknown_listing_is_404(client):
    response = client.post("/listings/missing/approve")
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_check_duplicate_and_submit(client, design_image):
    files = {"file": ("chair.png", design_image, "image/png")}
    check = client.post("/designs/check-duplicate", files=files, data={"product_id": "prod-1"})
    assert check.status_code == 200
    assert check.json()["is_duplicate"] is False
    assert check.json()["indexed_product_id"] == "prod-1"

    duplicate = client.post(
        "/designs",
        files={"file": ("copy.png", design_image, "image/png")},
        data={"designer_id": "designer-2", "product_id": "prod-2", "image_reference": "gs://designs/copy.png"},
    )
    assert duplicate.status_code == 409
    body = duplicate.json()
    assert body["error"] == "duplicate_design"
    assert body["details"]["matches"][0]["product_id"] == "prod-1"


def test_empty_upload_rejected(client):
    response = client.post("/designs/check-duplicate", files={"file": ("empty.png", b"", "image/png")})
    assert response.status_code == 422


def test_resolve_tier(client):
    assert client.get("/tiers/resolve", params={"cumulative_sales": "415000"}).json()["tier_name"] == "Premium"
    assert client.get("/tiers/resolve", params={"designer_id": "nobody"}).json()["tier_name"] == "Standard"
    assert client.get("/tiers/resolve").status_code == 422


def test_sale_earnings_and_payout(client):
    product = approved_product(client)
    sale = client.post("/sales", json={"product_id": product["id"], "sale_price": "75000",
                                       "sale_reference": "order-9", "sale_date": "2024-03-05T10:00:00Z"})
    assert sale.status_code == 201
    record = sale.json()
    assert Decimal(record["commission_amount"]) == Decimal("5000")
    assert Decimal(record["designer_earnings"]) == Decimal("30000")

    replay = client.post("/sales", json={"product_id": product["id"], "sale_price": "75000",
                                         "sale_reference": "order-9"})
    assert replay.json()["id"] == record["id"]

    earnings = client.get("/designers/designer-1/earnings").json()
    assert earnings["sale_count"] == 1
    assert Decimal(earnings["unpaid_balance"]) == Decimal("30000")

    run = client.post("/payouts/run", json={"period": "2024-03"})
    assert run.status_code == 200
    [result] = run.json()["results"]
    assert result["status"] == "paid"
    assert Decimal(result["total_amount"]) == Decimal("30000")

    earnings = client.get("/designers/designer-1/earnings").json()
    assert Decimal(earnings["paid_out"]) == Decimal("30000")
    assert Decimal(earnings["unpaid_balance"]) == Decimal("0")


def test_sale_reference_reused_across_designers_is_conflict(client):
    first = approved_product(client, designer_id="designer-1")
    second = approved_product(client, designer_id="designer-2")
    client.post("/sales", json={"product_id": first["id"], "sale_price": "75000", "sale_reference": "order-4"})

    response = client.post("/sales", json={"product_id": second["id"], "sale_price": "75000",
                                           "sale_reference": "order-4"})
    assert response.status_code == 409
    assert response.json()["error"] == "conflict"


def test_sale_on_unapproved_listing_is_conflict(client):
    product = client.post("/listings", json={"designer_id": "designer-1", "category": "chairs",
                                             "dimensions": DIMENSIONS}).json()
    response = client.post("/sales", json={"product_id": product["id"], "sale_price": "75000"})
    assert response.status_code == 409


def test_reverse_sale_once(client):
    product = approved_product(client)
    record = client.post("/sales", json={"product_id": product["id"], "sale_price": "75000"}).json()

    reversal = client.post(f"/sales/{record['id']}/reverse", json={"reason": "cancelled"})
    assert reversal.status_code == 201
    assert Decimal(reversal.json()["designer_earnings"]) == -Decimal(record["designer_earnings"])
    assert client.post(f"/sales/{record['id']}/reverse", json={}).status_code == 409


def test_bad_payout_period(client):
    response = client.post("/payouts/run", json={"period": "last month"})
    assert response.status_code == 422


def test_storage_outage_is_503(client, store):
    store.unavailable = True
    response = client.get("/designers/designer-1/earnings")
    assert response.status_code == 503
    assert response.json()["error"] == "storage_unavailable"
