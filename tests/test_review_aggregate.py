"""Tests for review votes, edits and rating summaries."""

import pytest

from storefront.errors import InvalidStateError
from storefront.reviews.aggregate import ReviewAggregate, rating_summary, validate_rating


def make_review(status="approved"):
    review = ReviewAggregate()
    review.id = "r-1"
    review.product_id = "p1"
    review.user_id = "u1"
    review.rating = 4
    review.comment = "Solid"
    review.status = status
    return review


class TestHelpfulVotes:
    def test_first_vote_counts(self):
        review = make_review()

        assert review.vote("u2", "up") == "up"
        assert review.vote("u3", "down") == "down"
        assert review.vote("u4", "up") == "up"
        assert review.helpful == 1

    def test_same_vote_twice_withdraws(self):
        review = make_review()
        review.vote("u2", "up")

        assert review.vote("u2", "up") is None
        assert review.helpful == 0
        assert review.votes == {}

    def test_switching_vote_moves_two(self):
        review = make_review()
        review.vote("u2", "up")

        assert review.vote("u2", "down") == "down"
        assert review.helpful == -1
        assert review.votes == {"u2": "down"}

    def test_unknown_vote(self):
        with pytest.raises(InvalidStateError):
            make_review().vote("u2", "sideways")


class TestEditAndModeration:
    def test_edit_returns_to_pending(self):
        review = make_review("approved")
        review.edit(rating=2, comment="Broke after a week")

        assert review.status == "pending"
        assert review.is_edited
        assert review.rating == 2
        assert review.title is None

    def test_edit_rejects_out_of_range_rating(self):
        review = make_review()
        with pytest.raises(InvalidStateError):
            review.edit(rating=6)
        assert review.rating == 4

    def test_moderate(self):
        review = make_review("pending")
        review.moderate("approved")
        assert review.is_public

        review.moderate("rejected")
        assert not review.is_public

    def test_moderate_to_pending_not_allowed(self):
        with pytest.raises(InvalidStateError):
            make_review().moderate("pending")

    def test_response_serialized(self):
        review = make_review()
        review.respond("Thanks!", "seller-1")

        response = review.to_dict()["response"]
        assert response["comment"] == "Thanks!"
        assert response["responded_by"] == "seller-1"


class TestRatingSummary:
    def test_average_rounded_to_one_decimal(self):
        assert rating_summary([5, 4, 4]) == (4.3, 3)

    def test_no_reviews(self):
        assert rating_summary([]) == (0.0, 0)

    @pytest.mark.parametrize("rating", [0, 6, -1])
    def test_rating_bounds(self, rating):
        with pytest.raises(InvalidStateError):
            validate_rating(rating)
