"""API tests for product reviews, moderation and rating aggregation."""

import pytest

ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "admin"}
SELLER = {"X-User-Id": "seller-1", "X-User-Role": "seller"}
USER = {"X-User-Id": "user-1", "X-User-Role": "customer"}
OTHER = {"X-User-Id": "user-2", "X-User-Role": "customer"}


def post_review(client, product_id, rating=5, headers=USER, **extra):
    return client.post(
        "/reviews",
        json={"product_id": product_id, "rating": rating, "comment": "Works well", **extra},
        headers=headers,
    )


def approve(client, review_id):
    response = client.patch(f"/reviews/{review_id}/approve", headers=ADMIN)
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def product(make_product):
    return make_product(name="Kettle", price=30)


class TestSubmit:
    def test_review_pending_until_approved(self, client, product, get_product):
        response = post_review(client, product["id"], rating=4, title="Nice")

        assert response.status_code == 201
        review = response.json()
        assert review["status"] == "pending"
        assert review["is_verified_purchase"] is False
        listed = client.get(f"/products/{product['id']}/reviews").json()
        assert listed["reviews"] == []
        assert get_product(product["id"])["ratings"] == {"average": 0, "count": 0}

    def test_one_review_per_product_and_user(self, client, product):
        post_review(client, product["id"])

        response = post_review(client, product["id"], rating=1)

        assert response.status_code == 400
        assert response.json()["detail"] == "You have already reviewed this product"

    def test_unknown_product(self, client):
        assert post_review(client, "missing").status_code == 404

    def test_rating_out_of_range(self, client, product):
        assert post_review(client, product["id"], rating=6).status_code == 422

    def test_requires_identity(self, client, product):
        assert post_review(client, product["id"], headers={}).status_code == 401

    def test_my_reviews_include_pending(self, client, product, make_product):
        other = make_product(name="Toaster")
        post_review(client, product["id"])
        post_review(client, other["id"])

        mine = client.get("/reviews/mine", headers=USER).json()

        assert mine["pagination"]["total"] == 2
        assert {r["status"] for r in mine["reviews"]} == {"pending"}


class TestVerifiedPurchase:
    def test_delivered_order_marks_verified(self, client, product, place_order):
        order = place_order([(product["id"], 1)], payment_method="cod").json()
        for status in ("shipped", "delivered"):
            client.patch(f"/orders/{order['id']}/status", json={"status": status}, headers=ADMIN)

        review = post_review(client, product["id"], order_id=order["id"]).json()

        assert review["is_verified_purchase"] is True

    def test_undelivered_order_not_verified(self, client, product, place_order):
        order = place_order([(product["id"], 1)]).json()

        review = post_review(client, product["id"], order_id=order["id"]).json()

        assert review["is_verified_purchase"] is False

    def test_someone_elses_order_not_verified(self, client, product, place_order):
        order = place_order([(product["id"], 1)], user_id="user-2", payment_method="cod").json()
        for status in ("shipped", "delivered"):
            client.patch(f"/orders/{order['id']}/status", json={"status": status}, headers=ADMIN)

        review = post_review(client, product["id"], order_id=order["id"]).json()

        assert review["is_verified_purchase"] is False


class TestModeration:
    def test_approved_reviews_drive_product_rating(self, client, product, get_product):
        first = post_review(client, product["id"], rating=5).json()
        second = post_review(client, product["id"], rating=4, headers=OTHER).json()
        approve(client, first["id"])
        approve(client, second["id"])

        assert get_product(product["id"])["ratings"] == {"average": 4.5, "count": 2}
        listed = client.get(f"/products/{product['id']}/reviews").json()
        assert listed["pagination"]["total"] == 2
        assert listed["ratings"]["average"] == 4.5
        assert listed["ratings"]["distribution"] == [
            {"rating": 5, "count": 1},
            {"rating": 4, "count": 1},
            {"rating": 3, "count": 0},
            {"rating": 2, "count": 0},
            {"rating": 1, "count": 0},
        ]

        client.patch(f"/reviews/{second['id']}/reject", headers=ADMIN)

        assert get_product(product["id"])["ratings"] == {"average": 5, "count": 1}

    def test_filter_by_rating(self, client, product):
        for rating, headers in [(5, USER), (2, OTHER)]:
            approve(client, post_review(client, product["id"], rating=rating, headers=headers).json()["id"])

        listed = client.get(f"/products/{product['id']}/reviews", params={"rating": 2}).json()

        assert [r["rating"] for r in listed["reviews"]] == [2]

    def test_edit_sends_review_back_to_moderation(self, client, product, get_product):
        review = post_review(client, product["id"], rating=5).json()
        approve(client, review["id"])

        response = client.put(
            f"/reviews/{review['id']}", json={"rating": 1, "comment": "Stopped working"}, headers=USER
        )

        assert response.status_code == 200
        edited = response.json()
        assert edited["status"] == "pending"
        assert edited["is_edited"] is True
        assert edited["rating"] == 1
        assert get_product(product["id"])["ratings"] == {"average": 0, "count": 0}

    def test_only_author_edits(self, client, product):
        review = post_review(client, product["id"]).json()

        assert client.put(f"/reviews/{review['id']}", json={"rating": 1}, headers=OTHER).status_code == 403
        assert client.put(f"/reviews/{review['id']}", json={"rating": 1}, headers=ADMIN).status_code == 403

    def test_moderation_requires_admin(self, client, product):
        review = post_review(client, product["id"]).json()

        assert client.patch(f"/reviews/{review['id']}/approve", headers=SELLER).status_code == 403
        assert client.patch(f"/reviews/{review['id']}/approve", headers=USER).status_code == 403


class TestDelete:
    def test_author_deletes_and_rating_recomputed(self, client, product, get_product):
        review = post_review(client, product["id"], rating=3).json()
        approve(client, review["id"])

        response = client.delete(f"/reviews/{review['id']}", headers=USER)

        assert response.status_code == 200
        assert get_product(product["id"])["ratings"] == {"average": 0, "count": 0}
        assert client.get("/reviews/mine", headers=USER).json()["reviews"] == []

    def test_other_user_cannot_delete(self, client, product):
        review = post_review(client, product["id"]).json()
        assert client.delete(f"/reviews/{review['id']}", headers=OTHER).status_code == 403

    def test_admin_can_delete(self, client, product):
        review = post_review(client, product["id"]).json()
        assert client.delete(f"/reviews/{review['id']}", headers=ADMIN).status_code == 200

    def test_unknown_review(self, client):
        assert client.delete("/reviews/missing", headers=USER).status_code == 404


class TestVotesAndResponses:
    def test_vote_toggle_and_switch(self, client, product):
        review = post_review(client, product["id"]).json()
        url = f"/reviews/{review['id']}/vote"

        assert client.post(url, json={"vote": "up"}, headers=OTHER).json()["helpful"] == 1
        assert client.post(url, json={"vote": "up"}, headers=ADMIN).json()["helpful"] == 2
        assert client.post(url, json={"vote": "up"}, headers=OTHER).json()["helpful"] == 1
        assert client.post(url, json={"vote": "down"}, headers=OTHER).json()["helpful"] == 0
        assert client.post(url, json={"vote": "up"}, headers=OTHER).json()["helpful"] == 2

    def test_invalid_vote(self, client, product):
        review = post_review(client, product["id"]).json()
        response = client.post(f"/reviews/{review['id']}/vote", json={"vote": "meh"}, headers=OTHER)
        assert response.status_code == 422

    def test_seller_responds_to_own_product(self, client):
        created = client.post(
            "/products",
            json={"name": "Lamp", "sku": "lamp-1", "price": 15, "quantity": 5, "status": "active"},
            headers=SELLER,
        ).json()
        review = post_review(client, created["id"]).json()

        response = client.post(
            f"/reviews/{review['id']}/respond", json={"comment": "Thanks!"}, headers=SELLER
        )

        assert response.status_code == 200
        assert response.json()["response"]["comment"] == "Thanks!"
        assert response.json()["response"]["responded_by"] == "seller-1"

    def test_other_seller_cannot_respond(self, client, product):
        review = post_review(client, product["id"]).json()

        response = client.post(
            f"/reviews/{review['id']}/respond", json={"comment": "Hi"}, headers=SELLER
        )

        assert response.status_code == 403

    def test_customer_cannot_respond(self, client, product):
        review = post_review(client, product["id"]).json()
        response = client.post(f"/reviews/{review['id']}/respond", json={"comment": "Hi"}, headers=OTHER)
        assert response.status_code == 403
