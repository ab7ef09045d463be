"""
Tests for phone normalization.

Tests cover:
- Local, international and bare spellings of the same number
- Formatting noise (spaces, dashes, plus sign)
- Unparseable input
- Round trips between the two forms
"""

import pytest

from tillsms.phone import is_kenyan_mobile, phone_digits, to_international, to_local


class TestToInternational:
    """Tests for to_international."""

    @pytest.mark.parametrize("raw", [
        "0712345678",
        "254712345678",
        "+254712345678",
        "712345678",
        "0712 345 678",
        "+254 712-345-678",
        " (0712) 345678 ",
    ])
    def test_spellings_normalize_identically(self, raw):
        assert to_international(raw) == "254712345678"

    def test_safaricom_01_prefix(self):
        assert to_international("0110345678") == "254110345678"
        assert to_international("110345678") == "254110345678"

    def test_thirteen_digit_international_kept(self):
        assert to_international("2547123456789") == "2547123456789"

    def test_unrecognized_shape_returns_digits(self):
        assert to_international("12345") == "12345"
        assert to_international("+1 415 555 0100") == "14155550100"

    @pytest.mark.parametrize("raw", [None, "", "   ", "abc", "+-()"])
    def test_unparseable_is_empty(self, raw):
        assert to_international(raw) == ""

    def test_non_string_input(self):
        assert to_international(712345678) == "254712345678"


class TestToLocal:
    """Tests for to_local."""

    def test_from_international(self):
        assert to_local("254712345678") == "0712345678"

    def test_local_passes_through(self):
        assert to_local("0712345678") == "0712345678"

    def test_bare_number(self):
        assert to_local("712345678") == "0712345678"

    def test_unparseable_is_empty(self):
        assert to_local(None) == ""
        assert to_local("n/a") == ""

    def test_unrecognized_shape_returns_digits(self):
        assert to_local("12345") == "12345"


class TestRoundTrip:
    """Normalizing a local rendering again yields the same key."""

    @pytest.mark.parametrize("raw", ["0712345678", "254110345678", "+254 722 000 111", "733444555", "999"])
    def test_idempotent(self, raw):
        key = to_international(raw)
        assert to_international(to_local(key)) == key


def test_phone_digits():
    assert phone_digits("+254 (712) 345-678") == "254712345678"
    assert phone_digits(None) == ""


def test_is_kenyan_mobile():
    assert is_kenyan_mobile("254712345678", "0712345678")
    assert not is_kenyan_mobile("14155550100", "14155550100")
    assert not is_kenyan_mobile("", "")
