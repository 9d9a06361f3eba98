# backend/tests/test_allocation.py
from decimal import Decimal

from tabsplit.domain.allocation import allocate_items, split_proportionally
from tabsplit.domain.models import (
    AbsoluteSplitMode,
    AllocationRule,
    CustomAssignment,
    DiscountExtra,
    EvenAssignment,
    Extras,
    FeeExtra,
    LineItem,
    PercentBase,
    TaxExtra,
    TipExtra,
)
from tabsplit.domain.money import is_whole_units
from tabsplit.services.itemized_service import calculate_itemized_allocation

USD = AllocationRule.for_currency("USD")


def make_item(item_id, price, assignees, qty="1", **kwargs):
    return LineItem(
        id=item_id,
        name=item_id.replace("-", " ").title(),
        quantity=Decimal(qty),
        unit_price=Decimal(price),
        assignment=EvenAssignment(tuple(assignees)),
        **kwargs,
    )


def calculate(items, extras=Extras(), payer="alice", participants=("alice", "bob"), rule=USD, **kwargs):
    outcome = calculate_itemized_allocation(items, extras, rule, payer, list(participants), **kwargs)
    assert outcome.ok, outcome.issues
    return outcome.result


def test_restaurant_bill_with_tax_and_tip():
    items = [
        make_item("pho", "14.00", ["alice"]),
        make_item("bun-cha", "13.00", ["bob"]),
        make_item("spring-rolls", "8.00", ["alice", "bob"]),
    ]
    extras = Extras(
        tax=TaxExtra.percent(Decimal("8.875")),
        tip=TipExtra.percent(Decimal("18")),
    )

    result = calculate(items, extras)

    assert result.participant_amounts == {"alice": Decimal("23.13"), "bob": Decimal("21.84")}
    assert result.grand_total == Decimal("44.97")
    assert sum(result.participant_amounts.values()) == result.grand_total

    alice = result.participant_breakdown["alice"]
    assert alice.item_subtotal == Decimal("18.00")
    assert alice.tax_allocated == Decimal("1.60")
    assert alice.tip_allocated == Decimal("3.53")
    assert alice.rounding_adjustment == Decimal("0.00")
    assert [(c.item_id, c.amount) for c in alice.items] == [
        ("pho", Decimal("14.00")),
        ("spring-rolls", Decimal("4.00")),
    ]

    bob = result.participant_breakdown["bob"]
    assert bob.item_subtotal == Decimal("17.00")
    assert bob.tax_allocated == Decimal("1.51")
    assert bob.tip_allocated == Decimal("3.33")


def test_custom_shares_are_normalized():
    item = LineItem(
        id="pizza",
        name="Pizza",
        quantity=Decimal(1),
        unit_price=Decimal("12.00"),
        assignment=CustomAssignment({"alice": Decimal("0.6667"), "bob": Decimal("0.3333")}),
    )

    result = calculate([item])

    assert result.participant_amounts == {"alice": Decimal("8.00"), "bob": Decimal("4.00")}
    assert result.grand_total == Decimal("12.00")


def test_zero_decimal_currency_never_produces_fractions():
    items = [make_item("lau", "100000", ["alice", "bob", "carol"])]
    extras = Extras(tax=TaxExtra.percent(Decimal("10")))

    result = calculate(
        items,
        extras,
        participants=("alice", "bob", "carol"),
        rule=AllocationRule.for_currency("VND"),
    )

    assert result.grand_total == Decimal("110000")
    assert sum(result.participant_amounts.values()) == Decimal("110000")
    for pid, b in result.participant_breakdown.items():
        values = [
            result.participant_amounts[pid],
            b.item_subtotal,
            b.tax_allocated,
            b.tip_allocated,
            b.fees_allocated,
            b.discounts_allocated,
            b.rounding_adjustment,
            b.total,
        ] + [c.amount for c in b.items]
        assert all(is_whole_units(v, 0) for v in values), (pid, values)
        assert b.components_sum == b.total


def test_payer_without_items_gets_zero_entry():
    items = [make_item("burger", "20.00", ["alice"])]

    result = calculate(items, payer="carol", participants=("alice",))

    assert result.participant_amounts == {"alice": Decimal("20.00"), "carol": Decimal("0.00")}
    assert result.participant_breakdown["carol"].items == ()


def test_pre_tax_discount_shrinks_tax_base():
    items = [make_item("a", "50.00", ["alice"]), make_item("b", "50.00", ["bob"])]
    extras = Extras(
        tax=TaxExtra.percent(Decimal("10"), PercentBase.POST_DISCOUNT_ITEM_SUBTOTALS),
        discounts=(DiscountExtra.percent("d1", "Coupon", Decimal("10")),),
    )

    result = calculate(items, extras)

    alice = result.participant_breakdown["alice"]
    assert alice.discounts_allocated == Decimal("-5.00")
    assert alice.tax_allocated == Decimal("4.50")
    assert alice.discounts_by_name == {"Coupon": Decimal("-5.00")}
    assert result.participant_amounts == {"alice": Decimal("49.50"), "bob": Decimal("49.50")}


def test_post_tax_discount_leaves_tax_alone():
    items = [make_item("a", "50.00", ["alice"]), make_item("b", "50.00", ["bob"])]
    extras = Extras(
        tax=TaxExtra.percent(Decimal("10")),
        discounts=(DiscountExtra.percent("d1", "Coupon", Decimal("10"), apply_before_tax=False),),
    )

    result = calculate(items, extras)

    alice = result.participant_breakdown["alice"]
    assert alice.tax_allocated == Decimal("5.00")
    assert alice.discounts_allocated == Decimal("-5.00")
    assert result.participant_amounts["alice"] == Decimal("50.00")


def test_discount_is_clamped_at_zero_per_participant():
    items = [make_item("side", "10.00", ["alice"]), make_item("main", "40.00", ["bob"])]
    extras = Extras(
        discounts=(
            DiscountExtra.amount(
                "d1", "Voucher", Decimal("30.00"), split_mode=AbsoluteSplitMode.EVEN_ACROSS_PARTICIPANTS
            ),
        ),
    )

    result = calculate(items, extras)

    assert result.participant_amounts == {"alice": Decimal("0.00"), "bob": Decimal("25.00")}
    assert result.participant_breakdown["alice"].discounts_allocated == Decimal("-10.00")
    assert result.grand_total == Decimal("25.00")


def test_even_fee_skips_participants_without_items():
    items = [make_item("a", "20.00", ["alice"]), make_item("b", "20.00", ["bob"])]
    extras = Extras(
        fees=(FeeExtra.amount("f1", "Delivery", Decimal("6.00"), split_mode=AbsoluteSplitMode.EVEN_ACROSS_PARTICIPANTS),),
    )

    result = calculate(items, extras, payer="carol")

    assert result.participant_amounts == {
        "alice": Decimal("23.00"),
        "bob": Decimal("23.00"),
        "carol": Decimal("0.00"),
    }
    assert result.participant_breakdown["alice"].fees_by_name == {"Delivery": Decimal("3.00")}


def test_proportional_fee_follows_item_subtotals():
    items = [make_item("a", "30.00", ["alice"]), make_item("b", "10.00", ["bob"])]
    extras = Extras(fees=(FeeExtra.amount("f1", "Service", Decimal("10.00")),))

    result = calculate(items, extras)

    assert result.participant_breakdown["alice"].fees_allocated == Decimal("7.50")
    assert result.participant_breakdown["bob"].fees_allocated == Decimal("2.50")


def test_taxable_only_base_ignores_untaxed_items():
    items = [
        make_item("bread", "10.00", ["alice"], taxable=False),
        make_item("beer", "10.00", ["bob"]),
    ]
    extras = Extras(tax=TaxExtra.percent(Decimal("10"), PercentBase.TAXABLE_ITEM_SUBTOTALS_ONLY))

    result = calculate(items, extras)

    assert result.participant_breakdown["alice"].tax_allocated == Decimal("0.00")
    assert result.participant_breakdown["bob"].tax_allocated == Decimal("1.00")


def test_amount_tax_is_proportional_to_subtotals():
    items = [make_item("a", "30.00", ["alice"]), make_item("b", "10.00", ["bob"])]
    extras = Extras(tax=TaxExtra.amount(Decimal("4.00")))

    result = calculate(items, extras)

    assert result.participant_breakdown["alice"].tax_allocated == Decimal("3.00")
    assert result.participant_breakdown["bob"].tax_allocated == Decimal("1.00")


def test_amount_tip_follows_post_fee_subtotals():
    items = [make_item("a", "30.00", ["alice"]), make_item("b", "10.00", ["bob"])]
    extras = Extras(
        fees=(FeeExtra.amount("f1", "Service", Decimal("10.00")),),
        tip=TipExtra.amount(Decimal("10.00")),
    )

    result = calculate(items, extras)

    assert result.participant_breakdown["alice"].tip_allocated == Decimal("7.50")
    assert result.participant_amounts == {"alice": Decimal("45.00"), "bob": Decimal("15.00")}


def test_quantity_multiplies_unit_price():
    items = [make_item("beer", "4.50", ["alice", "bob"], qty="3")]

    result = calculate(items)

    assert result.grand_total == Decimal("13.50")
    assert result.participant_amounts == {"alice": Decimal("6.75"), "bob": Decimal("6.75")}


def test_engine_output_is_unrounded():
    items = [make_item("cake", "10.00", ["alice", "bob", "carol"])]

    breakdowns = allocate_items(items, Extras(), ["alice", "bob", "carol"])

    assert Decimal("3.33") < breakdowns["alice"].total < Decimal("3.34")
    assert not is_whole_units(breakdowns["alice"].total, 2)


def test_split_proportionally_falls_back_to_even():
    amounts = split_proportionally(Decimal("9"), {"a": Decimal(0), "b": Decimal(0)}, ["a", "b", "c"])
    assert amounts == {"a": Decimal(3), "b": Decimal(3), "c": Decimal(3)}


def test_breakdown_identity_holds_with_every_extra():
    items = [
        make_item("steak", "38.99", ["alice"]),
        make_item("salad", "11.49", ["bob", "carol"]),
        make_item("wine", "42.00", ["alice", "bob", "carol"], taxable=False),
    ]
    extras = Extras(
        tax=TaxExtra.percent(Decimal("7.25"), PercentBase.TAXABLE_ITEM_SUBTOTALS_ONLY),
        tip=TipExtra.percent(Decimal("20"), PercentBase.POST_FEES_SUBTOTALS),
        fees=(
            FeeExtra.percent("svc", "Service", Decimal("3")),
            FeeExtra.amount("bag", "Corkage", Decimal("5.00"), split_mode=AbsoluteSplitMode.EVEN_ACROSS_PARTICIPANTS),
        ),
        discounts=(
            DiscountExtra.amount("happy", "Happy hour", Decimal("4.00")),
            DiscountExtra.percent("loyal", "Loyalty", Decimal("5"), PercentBase.POST_TAX_SUBTOTALS, apply_before_tax=False),
        ),
    )

    result = calculate(items, extras, participants=("alice", "bob", "carol"))

    assert sum(result.participant_amounts.values()) == result.grand_total
    for b in result.participant_breakdown.values():
        assert b.components_sum == b.total
        assert b.discounts_allocated <= 0
