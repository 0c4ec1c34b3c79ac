"""API tests for products, inventory administration and coupons."""

ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "admin"}
CUSTOMER = {"X-User-Id": "user-1", "X-User-Role": "customer"}


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestIdentity:
    def test_missing_identity_is_unauthorized(self, client):
        response = client.get("/cart")
        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    def test_customer_cannot_create_products(self, client):
        response = client.post(
            "/products", json={"name": "X", "sku": "x", "price": 1}, headers=CUSTOMER
        )
        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

    def test_unknown_role_rejected(self, client):
        response = client.get("/cart", headers={"X-User-Id": "u", "X-User-Role": "root"})
        assert response.status_code == 403


class TestProducts:
    def test_create_product(self, make_product):
        product = make_product(name="Lamp", price=25.5, quantity=4)

        assert product["name"] == "Lamp"
        assert product["sku"] == "SKU-001"
        assert product["status"] == "active"
        assert product["stock"] == {
            "quantity": 4,
            "reserved": 0,
            "available": 4,
            "low_stock_threshold": 10,
        }
        assert product["sales"] == 0
        assert product["seller_id"] == "admin-1"

    def test_duplicate_sku_rejected(self, client):
        body = {"name": "A", "sku": "dup-1", "price": 1}
        assert client.post("/products", json=body, headers=ADMIN).status_code == 201

        response = client.post("/products", json={**body, "sku": "DUP-1"}, headers=ADMIN)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_state"

    def test_negative_quantity_rejected(self, client):
        response = client.post(
            "/products", json={"name": "A", "sku": "a", "price": 1, "quantity": -1}, headers=ADMIN
        )
        assert response.status_code == 422

    def test_list_and_get(self, client, make_product):
        first = make_product(name="One")
        make_product(name="Two", status="draft")

        listed = client.get("/products").json()
        assert {p["name"] for p in listed} == {"One", "Two"}

        active = client.get("/products", params={"status": "active"}).json()
        assert [p["id"] for p in active] == [first["id"]]

        assert client.get(f"/products/{first['id']}").json()["name"] == "One"

    def test_unknown_product(self, client):
        response = client.get("/products/nope")
        assert response.status_code == 404
        assert response.json() == {"detail": "Product not found: nope", "error": "not_found"}

    def test_restock_reactivates_out_of_stock(self, client, make_product):
        product = make_product(quantity=0, status="out_of_stock")

        response = client.post(
            f"/products/{product['id']}/restock", json={"quantity": 5}, headers=ADMIN
        )

        assert response.status_code == 200
        assert response.json()["stock"]["quantity"] == 5
        assert response.json()["status"] == "active"

    def test_restock_requires_admin(self, client, make_product):
        product = make_product()
        response = client.post(
            f"/products/{product['id']}/restock", json={"quantity": 5}, headers=CUSTOMER
        )
        assert response.status_code == 403


class TestInventoryAdmin:
    def test_low_stock(self, client, make_product):
        low = make_product(name="Low", quantity=3)
        make_product(name="Plenty", quantity=50)
        make_product(name="Hidden", quantity=1, status="draft")

        response = client.get("/admin/inventory/low-stock", headers=ADMIN)

        assert response.status_code == 200
        assert [p["id"] for p in response.json()] == [low["id"]]

    def test_low_stock_custom_threshold(self, client, make_product):
        make_product(name="Mid", quantity=20)
        response = client.get(
            "/admin/inventory/low-stock", params={"threshold": 25}, headers=ADMIN
        )
        assert len(response.json()) == 1

    def test_report(self, client, make_product):
        make_product(price=10, quantity=3)
        make_product(price=2.5, quantity=4)
        make_product(quantity=0, status="out_of_stock")

        report = client.get("/admin/inventory/report", headers=ADMIN).json()

        assert report == {
            "total_products": 3,
            "active_products": 2,
            "out_of_stock": 1,
            "total_inventory_value": 40.0,
        }

    def test_report_requires_admin(self, client):
        assert client.get("/admin/inventory/report", headers=CUSTOMER).status_code == 403


class TestCoupons:
    def test_create_and_get(self, client, make_coupon):
        created = make_coupon(code="welcome", maximum_discount=5)
        assert created["code"] == "WELCOME"

        fetched = client.get("/coupons/welcome", headers=CUSTOMER).json()
        assert fetched["id"] == created["id"]
        assert fetched["maximum_discount"] == 5
        assert fetched["usage_count"] == 0

    def test_duplicate_code(self, client, make_coupon):
        make_coupon(code="ONCE")
        now = "2024-01-01T00:00:00+00:00"
        response = client.post(
            "/coupons",
            json={
                "code": "once",
                "type": "fixed",
                "value": 5,
                "start_date": now,
                "end_date": "2099-01-01T00:00:00+00:00",
            },
            headers=ADMIN,
        )
        assert response.status_code == 400

    def test_end_before_start(self, client):
        response = client.post(
            "/coupons",
            json={
                "code": "BACKWARDS",
                "type": "fixed",
                "value": 5,
                "start_date": "2024-02-01T00:00:00+00:00",
                "end_date": "2024-01-01T00:00:00+00:00",
            },
            headers=ADMIN,
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_state"

    def test_validate(self, client, make_coupon):
        make_coupon(code="SAVE10", value=10, maximum_discount=5)

        response = client.post(
            "/coupons/validate", json={"code": "SAVE10", "subtotal": 100}, headers=CUSTOMER
        )

        assert response.status_code == 200
        assert response.json()["discount"] == 5

    def test_validate_below_minimum(self, client, make_coupon):
        make_coupon(code="BIG", minimum_purchase=100)

        response = client.post(
            "/coupons/validate", json={"code": "BIG", "subtotal": 20}, headers=CUSTOMER
        )

        assert response.status_code == 400
        assert response.json()["error"] == "coupon_ineligible"

    def test_unknown_coupon(self, client):
        response = client.get("/coupons/NOPE", headers=CUSTOMER)
        assert response.status_code == 404
