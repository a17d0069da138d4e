import pytest

from schemas.errors import AmountOutOfRange, InvalidIdentity
from services.validation import normalize_identity, validate


@pytest.mark.parametrize("raw", [
    "6281234567890",
    "081234567890",
    "81234567890",
    "+62 812-3456-7890",
    "6281234567890@c.us",
])
def test_identity_variants_normalize_to_62_form(raw):
    assert normalize_identity(raw) == "6281234567890"


@pytest.mark.parametrize("raw", ["", None, "12345", "abc", "1281234567890", "62812", True])
def test_invalid_identity_rejected(raw):
    with pytest.raises(InvalidIdentity):
        normalize_identity(raw)


@pytest.mark.parametrize("amount", [1_000, 50_000, 10_000_000, 1_500])
def test_amount_bounds_inclusive(amount):
    assert validate("081234567890", amount) == ("6281234567890", amount)


@pytest.mark.parametrize("amount", [0, 999, -5_000, 10_000_001])
def test_amount_out_of_range(amount):
    with pytest.raises(AmountOutOfRange) as exc:
        validate("081234567890", amount)
    assert "Rp 1.000" in exc.value.user_message
    assert "Rp 10.000.000" in exc.value.user_message


@pytest.mark.parametrize("amount", [50_000.0, "50000", True, None])
def test_non_integer_amount_rejected(amount):
    with pytest.raises(AmountOutOfRange):
        validate("081234567890", amount)


def test_identity_checked_before_amount():
    with pytest.raises(InvalidIdentity):
        validate("not-a-phone", 5)


def test_custom_bounds():
    assert validate("081234567890", 500, min_amount=100, max_amount=1_000)[1] == 500
    with pytest.raises(AmountOutOfRange):
        validate("081234567890", 2_000, min_amount=100, max_amount=1_000)
