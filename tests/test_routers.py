"""
Cart store and VAT endpoints through FastAPI's TestClient (Firestore replaced by an
in-memory double, auth replaced by a fixed user).
"""
from fastapi.testclient import TestClient

from backend.app.config import get_db
from backend.app.main import app


def add(client, product_id="clos-vallot-2019", quantity=1):
    return client.post("/cart", json={"product_id": product_id, "quantity": quantity})


# ---------- /cart ----------
def test_empty_cart(client):
    resp = client.get("/cart")
    assert resp.status_code == 200
    assert resp.json() == {
        "lines": [],
        "summary": {"item_count": 0, "total_quantity": 0, "subtotal_minor_units": 0},
    }


def test_add_line_snapshots_price(client, fake_db):
    resp = add(client, quantity=3)
    assert resp.status_code == 201
    line = resp.json()["line"]
    assert line["product_id"] == "clos-vallot-2019"
    assert line["quantity"] == 3
    assert line["unit_price_minor_units"] == 2550
    assert line["line_total_minor_units"] == 7650
    assert line["name"] == "Clos Vallot 2019"

    stored = fake_db.data["carts"]["user-1"]["lines"]
    assert [it["id"] for it in stored] == [line["id"]]


def test_add_prefers_final_price(client):
    line = add(client, "cuvee-prestige").json()["line"]
    assert line["unit_price_minor_units"] == 3990


def test_add_same_product_merges(client):
    first = add(client, quantity=2).json()["line"]
    second = add(client, quantity=3).json()["line"]
    assert second["id"] == first["id"]
    assert second["quantity"] == 5

    body = client.get("/cart").json()
    assert body["summary"] == {"item_count": 1, "total_quantity": 5, "subtotal_minor_units": 12750}


def test_add_unknown_or_inactive_product(client):
    for pid in ("nope", "retired"):
        resp = add(client, pid)
        assert resp.status_code == 404
        assert resp.json() == {"error": "Product not found"}


def test_add_beyond_stock(client):
    resp = add(client, quantity=11)
    assert resp.status_code == 409
    assert resp.json()["error"] == "Insufficient stock available"


def test_add_rejects_bad_body(client):
    resp = client.post("/cart", json={"product_id": "\u200b ", "quantity": 1})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid request data"

    resp = add(client, quantity=0)
    assert resp.status_code == 400


def test_update_quantity(client):
    line_id = add(client).json()["line"]["id"]
    resp = client.put(f"/cart/{line_id}", json={"quantity": 4})
    assert resp.status_code == 200
    assert resp.json()["line"]["quantity"] == 4
    assert client.get("/cart").json()["summary"]["subtotal_minor_units"] == 10200


def test_update_to_zero_removes(client, fake_db):
    line_id = add(client).json()["line"]["id"]
    resp = client.put(f"/cart/{line_id}", json={"quantity": 0})
    assert resp.status_code == 200
    assert resp.json() == {"line": None}
    assert "user-1" not in fake_db.data["carts"]


def test_update_errors(client):
    resp = client.put("/cart/missing", json={"quantity": 2})
    assert resp.status_code == 404
    assert resp.json() == {"error": "Cart item not found"}

    line_id = add(client).json()["line"]["id"]
    assert client.put(f"/cart/{line_id}", json={"quantity": 11}).status_code == 409
    assert client.put(f"/cart/{line_id}", json={"quantity": -1}).status_code == 400


def test_delete_line(client):
    keep = add(client, "cuvee-prestige").json()["line"]["id"]
    drop = add(client).json()["line"]["id"]

    resp = client.delete(f"/cart/{drop}")
    assert resp.status_code == 204
    assert [it["id"] for it in client.get("/cart").json()["lines"]] == [keep]

    resp = client.delete(f"/cart/{drop}")
    assert resp.status_code == 404
    assert resp.json() == {"error": "Cart item not found"}


def test_cart_requires_token(fake_db):
    app.dependency_overrides[get_db] = lambda: fake_db
    try:
        anon = TestClient(app)
        resp = anon.get("/cart")
        assert resp.status_code == 401
        assert resp.json() == {"error": "Authentication required"}
        assert resp.headers["www-authenticate"] == "Bearer"
        assert anon.post("/cart", json={"product_id": "clos-vallot-2019"}).status_code == 401
    finally:
        app.dependency_overrides.clear()


# ---------- /vat ----------
def test_vat_calculate_formats_for_display(client):
    resp = client.post("/vat/calculate", json={"amount_minor_units": 7650, "country_code": "NL"})
    assert resp.status_code == 200
    calc = resp.json()["calculation"]
    assert calc["vat_amount_minor_units"] == 1607
    assert calc["total_amount_minor_units"] == 9257
    assert calc["vat_rate"] == 0.21
    assert calc["country"] == "Netherlands"
    assert calc["breakdown"] == {"product_vat": 1607, "shipping_vat": 0}
    assert calc["formatted"]["total_amount"] == "92,57\u00a0€"
    assert calc["formatted"]["vat_rate"] == "21%"


def test_vat_calculate_reverse_charge(client):
    resp = client.post("/vat/calculate", json={
        "amount_minor_units": 10000,
        "shipping_amount_minor_units": 500,
        "country_code": "de",
        "customer_type": "business",
        "business_vat_number": "DE123456789",
    })
    calc = resp.json()["calculation"]
    assert calc["is_reverse_charge"] is True
    assert calc["exemption_reason"] == "Reverse charge - B2B transaction"
    assert calc["total_amount_minor_units"] == 10500


def test_vat_calculate_rejects_bad_input(client):
    resp = client.post("/vat/calculate", json={"amount_minor_units": -5, "country_code": "N"})
    assert resp.status_code == 400
    assert resp.json() == {
        "error": "Invalid VAT calculation data",
        "details": ["Amount must be positive", "Valid country code is required"],
    }

    resp = client.post("/vat/calculate", json={"country_code": "NL"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid request data"


def test_vat_rates(client):
    rates = client.get("/vat/rates").json()
    assert len(rates) == 27
    nl = next(r for r in rates if r["country_code"] == "NL")
    assert nl["rate"] == 0.21
    assert nl["is_eu_member"] is True
    assert len(client.get("/vat/rates/eu").json()) == 27


def test_vat_calculate_blank_customer_type_is_consumer(client):
    resp = client.post("/vat/calculate", json={"amount_minor_units": 7650, "country_code": "NL", "customer_type": ""})
    assert resp.status_code == 200
    calc = resp.json()["calculation"]
    assert calc["vat_amount_minor_units"] == 1607
    assert calc["is_reverse_charge"] is False

    resp = client.post("/vat/calculate", json={"amount_minor_units": 7650, "country_code": "NL", "customer_type": "b2b"})
    assert resp.status_code == 400
    assert resp.json()["details"] == ["Customer type must be business or consumer"]
