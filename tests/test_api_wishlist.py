"""API tests for the wishlist."""

USER = {"X-User-Id": "user-1", "X-User-Role": "customer"}
OTHER = {"X-User-Id": "user-2", "X-User-Role": "customer"}


def add(client, product_id, headers=USER, **extra):
    return client.post("/wishlist", json={"product_id": product_id, **extra}, headers=headers)


class TestWishlist:
    def test_new_user_has_empty_wishlist(self, client):
        wishlist = client.get("/wishlist", headers=USER).json()
        assert wishlist == {"user_id": "user-1", "items": [], "total_items": 0}

    def test_add_shows_current_product_details(self, client, make_product):
        product = make_product(name="Mug", price=12, quantity=4)

        wishlist = add(client, product["id"], note="for mom").json()

        assert wishlist["total_items"] == 1
        item = wishlist["items"][0]
        assert item["product_id"] == product["id"]
        assert item["note"] == "for mom"
        assert item["product"]["name"] == "Mug"
        assert item["product"]["price"] == 12
        assert item["product"]["available"] == 4

    def test_duplicate_rejected(self, client, make_product):
        product = make_product()
        add(client, product["id"])

        response = add(client, product["id"])

        assert response.status_code == 400
        assert response.json()["detail"] == "Product already in wishlist"

    def test_unknown_product(self, client):
        assert add(client, "missing").status_code == 404

    def test_check_and_remove(self, client, make_product):
        product = make_product()
        add(client, product["id"])

        check = client.get(f"/wishlist/check/{product['id']}", headers=USER).json()
        assert check == {"product_id": product["id"], "in_wishlist": True}

        wishlist = client.delete(f"/wishlist/{product['id']}", headers=USER).json()
        assert wishlist["items"] == []
        assert client.get(f"/wishlist/check/{product['id']}", headers=USER).json()["in_wishlist"] is False

    def test_clear(self, client, make_product):
        for name in ("A", "B"):
            add(client, make_product(name=name)["id"])

        assert client.delete("/wishlist", headers=USER).json()["total_items"] == 0
        assert client.get("/wishlist", headers=USER).json()["items"] == []

    def test_wishlists_are_per_user(self, client, make_product):
        product = make_product()
        add(client, product["id"])

        assert client.get("/wishlist", headers=OTHER).json()["items"] == []
        assert add(client, product["id"], headers=OTHER).status_code == 200

    def test_requires_identity(self, client):
        assert client.get("/wishlist").status_code == 401
