from decimal import Decimal

import pytest

from stock_harvest.errors import MalformedFieldError
from stock_harvest.input.numeric import extract_decimal, extract_int, is_not_reported


@pytest.mark.parametrize("fragment", [None, "", "   ", "-", "--", "—", "N/A", "ｘ"])
def test_not_reported_markers_map_to_none(fragment):
    assert is_not_reported(fragment)
    assert extract_decimal(fragment) is None
    assert extract_int(fragment) is None


def test_thousands_separator():
    assert extract_int("1,234,567") == 1234567


def test_zero_is_a_value_not_absence():
    assert extract_decimal("0") == Decimal("0")
    assert extract_decimal("0.00") == Decimal("0.00")


def test_signed_values():
    assert extract_decimal("-12,345") == Decimal("-12345")
    assert extract_decimal("+3.50") == Decimal("3.50")
    assert extract_decimal("−1.5") == Decimal("-1.5")


def test_percent_is_dropped_without_scaling():
    assert extract_decimal("2.35%") == Decimal("2.35")


def test_surrounding_label_text_is_ignored():
    assert extract_decimal("本益比：15.20 倍") == Decimal("15.20")


def test_full_width_digits():
    assert extract_int("１，２３４") == 1234


def test_unit_suffixes_scale():
    assert extract_int("15,560億") == 1556000000000
    assert extract_int("1.5萬") == 15000


def test_no_number_returns_none():
    assert extract_decimal("暫停交易") is None


def test_extract_int_rejects_fraction():
    with pytest.raises(MalformedFieldError) as info:
        extract_int("12.5", field="volume")
    assert info.value.field == "volume"
