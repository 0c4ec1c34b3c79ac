"""Tests for WishlistAggregate."""

import pytest

from storefront.errors import InvalidStateError
from storefront.wishlist.aggregate import WishlistAggregate


class TestWishlist:
    def test_duplicate_product_rejected(self):
        wishlist = WishlistAggregate("u1")
        wishlist.add_item("p1", note="birthday")

        with pytest.raises(InvalidStateError, match="already in wishlist"):
            wishlist.add_item("p1")
        assert len(wishlist.items) == 1

    def test_remove_missing_is_noop(self):
        wishlist = WishlistAggregate("u1")
        wishlist.add_item("p1")
        wishlist.remove_item("p2")

        assert wishlist.has_product("p1")

    def test_unknown_product_serialized_without_details(self):
        wishlist = WishlistAggregate("u1")
        wishlist.add_item("p1")

        data = wishlist.to_dict()
        assert data["total_items"] == 1
        assert data["items"][0]["product"] is None
