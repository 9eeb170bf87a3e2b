"""Tests for the pure similarity scorers."""

from datetime import date
from decimal import Decimal

import pytest

from ledger_import.services.similarity import (
    amount_match,
    amount_proximity,
    date_proximity,
    string_similarity,
    transfer_amount_match,
)


class TestStringSimilarity:
    def test_identical_scores_one(self):
        assert string_similarity("COFFEE SHOP", "COFFEE SHOP") == 1.0
        assert string_similarity("coffee shop", "COFFEE  SHOP") == 1.0

    def test_empty_scores_zero(self):
        assert string_similarity("", "COFFEE") == 0.0
        assert string_similarity(None, "COFFEE") == 0.0
        assert string_similarity("***", "COFFEE") == 0.0

    @pytest.mark.parametrize(
        ("a", "b"),
        [
            ("COFFEE SHOP", "COFFEE SHP PURCHASE"),
            ("AMAZON MARKETPLACE", "AMZN MKTP"),
            ("NETFLIX", "SPOTIFY PREMIUM"),
        ],
    )
    def test_symmetric(self, a, b):
        assert string_similarity(a, b) == string_similarity(b, a)

    def test_bounded(self):
        score = string_similarity("COFFEE SHOP", "COFFEE SHP PURCHASE")
        assert 0.0 < score < 1.0

    def test_more_shared_tokens_do_not_lower_score(self):
        base = string_similarity("ALPHA", "ALPHA BETA GAMMA")
        more = string_similarity("ALPHA BETA", "ALPHA BETA GAMMA")
        assert more >= base

    def test_unrelated_is_low(self):
        assert string_similarity("NETFLIX", "SPOTIFY PREMIUM") < 0.3


class TestDateProximity:
    def test_same_day(self):
        assert date_proximity(date(2024, 1, 1), date(2024, 1, 1)) == 1.0

    def test_linear_decay(self):
        assert date_proximity(date(2024, 1, 1), date(2024, 1, 2)) == pytest.approx(2 / 3, abs=1e-4)
        assert date_proximity(date(2024, 1, 3), date(2024, 1, 1)) == pytest.approx(1 / 3, abs=1e-4)

    def test_zero_at_and_beyond_window(self):
        assert date_proximity(date(2024, 1, 1), date(2024, 1, 4)) == 0.0
        assert date_proximity(date(2024, 1, 1), date(2024, 2, 1)) == 0.0

    def test_custom_window(self):
        assert date_proximity(date(2024, 1, 1), date(2024, 1, 6), window_days=10) == 0.5


class TestAmountMatch:
    def test_exact_by_default(self):
        assert amount_match(Decimal("-25.50"), Decimal("-25.50"))
        assert not amount_match(Decimal("-25.50"), Decimal("-25.51"))

    def test_tolerance_is_relative(self):
        assert amount_match(Decimal("-25.50"), Decimal("-25.00"), 2)
        assert not amount_match(Decimal("-25.50"), Decimal("-24.00"), 2)

    def test_sign_difference_never_matches_within_small_tolerance(self):
        assert not amount_match(Decimal("-25.00"), Decimal("25.00"), 2)

    def test_proximity_band(self):
        assert amount_proximity(Decimal("10.00"), Decimal("10.00"), 2) == 1.0
        assert amount_proximity(Decimal("100.00"), Decimal("98.00"), 2) == pytest.approx(0.8)
        assert amount_proximity(Decimal("100.00"), Decimal("99.00"), 2) == pytest.approx(0.9)
        assert amount_proximity(Decimal("100.00"), Decimal("90.00"), 2) == 0.0
        assert amount_proximity(Decimal("100.00"), Decimal("99.00"), 0) == 0.0


class TestTransferAmountMatch:
    def test_opposite_signs_within_tolerance(self):
        assert transfer_amount_match(Decimal("-500.00"), Decimal("500.00"))
        assert transfer_amount_match(Decimal("-500.00"), Decimal("480.00"))

    def test_same_sign_rejected(self):
        assert not transfer_amount_match(Decimal("500.00"), Decimal("500.00"))

    def test_outside_tolerance_rejected(self):
        assert not transfer_amount_match(Decimal("-500.00"), Decimal("400.00"))

    def test_zero_rejected(self):
        assert not transfer_amount_match(Decimal("0"), Decimal("0"))
