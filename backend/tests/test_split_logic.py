# backend/tests/test_split_logic.py
from decimal import Decimal

import pytest

from tabsplit.domain.split_logic import (
    SplitLogicError,
    from_minor_units,
    split_amount,
    split_units_by_weights,
    split_units_evenly,
    to_minor_units,
)


def test_equal_split_no_remainder():
    alloc = split_units_evenly(100, ["a", "b", "c", "d"])
    assert alloc.amounts_units == (25, 25, 25, 25)
    assert sum(alloc.amounts_units) == 100


def test_remainder_goes_to_first_r_people():
    # 101 units split across 4 => base 25, remainder 1
    alloc = split_units_evenly(101, ["a", "b", "c", "d"])
    assert alloc.amounts_units == (26, 25, 25, 25)

    # 103 units split across 4 => base 25, remainder 3
    alloc2 = split_units_evenly(103, ["a", "b", "c", "d"])
    assert alloc2.amounts_units == (26, 26, 26, 25)
    assert sum(alloc2.amounts_units) == 103


def test_participant_order_matters_for_remainder_distribution():
    alloc1 = split_units_evenly(103, ["a", "b", "c", "d"])
    alloc2 = split_units_evenly(103, ["d", "c", "b", "a"])
    assert alloc1.as_dict()["a"] == 26
    assert alloc2.as_dict()["d"] == 26
    assert alloc2.as_dict()["a"] == 25


def test_zero_total_is_all_zeros():
    alloc = split_units_evenly(0, ["a", "b", "c"])
    assert alloc.amounts_units == (0, 0, 0)


def test_single_participant_gets_all():
    alloc = split_units_evenly(999, ["solo"])
    assert alloc.amounts_units == (999,)


def test_weighted_split_uses_largest_remainder():
    # 100 units at weights 1:1:1 would be 33.33 each; the one leftover unit
    # goes to the first listed on a tie.
    alloc = split_units_by_weights(100, {"a": Decimal(1), "b": Decimal(1), "c": Decimal(1)})
    assert alloc.amounts_units == (34, 33, 33)

    # 1000 at 2:1 => 666.67 / 333.33, largest fraction wins the unit
    alloc2 = split_units_by_weights(1000, {"a": Decimal(2), "b": Decimal(1)})
    assert alloc2.amounts_units == (667, 333)


def test_weighted_split_zero_weight_gets_nothing():
    alloc = split_units_by_weights(500, {"a": Decimal(1), "b": Decimal(0), "c": Decimal(1)})
    assert alloc.as_dict() == {"a": 250, "b": 0, "c": 250}


def test_weighted_split_all_zero_raises():
    with pytest.raises(SplitLogicError):
        split_units_by_weights(100, {"a": Decimal(0), "b": Decimal(0)})


def test_invalid_total_type_raises():
    with pytest.raises(SplitLogicError):
        split_units_evenly("100", ["a", "b"])  # type: ignore[arg-type]


def test_negative_total_raises():
    with pytest.raises(SplitLogicError):
        split_units_evenly(-1, ["a"])


def test_empty_participants_raises():
    with pytest.raises(SplitLogicError):
        split_units_evenly(100, [])


def test_non_string_participant_id_raises():
    with pytest.raises(SplitLogicError):
        split_units_evenly(100, ["a", 123])  # type: ignore[list-item]


def test_blank_participant_id_raises():
    with pytest.raises(SplitLogicError):
        split_units_evenly(100, ["a", "  "])


def test_minor_unit_conversion():
    assert to_minor_units(Decimal("12.34"), 2) == 1234
    assert to_minor_units(Decimal("1500"), 0) == 1500
    assert to_minor_units(Decimal("1.234"), 3) == 1234
    assert from_minor_units(1234, 2) == Decimal("12.34")
    assert str(from_minor_units(5, 2)) == "0.05"


def test_minor_unit_conversion_rejects_extra_places():
    with pytest.raises(SplitLogicError):
        to_minor_units(Decimal("1.005"), 2)


def test_split_amount_sums_exactly():
    shares = split_amount(Decimal("100.00"), {"a": Decimal(1), "b": Decimal(1), "c": Decimal(1)}, 2)
    assert shares == {"a": Decimal("33.34"), "b": Decimal("33.33"), "c": Decimal("33.33")}
    assert sum(shares.values()) == Decimal("100.00")


def test_split_amount_zero_decimal_currency():
    shares = split_amount(Decimal("1000"), {"a": Decimal(1), "b": Decimal(2)}, 0)
    assert shares == {"a": Decimal("333"), "b": Decimal("667")}


def test_large_numbers_still_integer_safe():
    alloc = split_units_evenly(10_000_001, ["a", "b", "c"])
    assert sum(alloc.amounts_units) == 10_000_001
    # remainder = 2, so first two get +1
    assert alloc.amounts_units[0] == alloc.amounts_units[2] + 1
    assert alloc.amounts_units[1] == alloc.amounts_units[2] + 1
