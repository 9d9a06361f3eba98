# backend/tests/test_settlement.py
from decimal import Decimal

import pytest

from tabsplit.domain.ledger import ItemizedExpense, LegacyExpense, PersonSummary, SplitType, Transfer
from tabsplit.domain.models import AllocationRule, EvenAssignment, Extras, LineItem, ModelValidationError
from tabsplit.domain.rounding import DataIntegrityError
from tabsplit.domain.settlement import (
    SettlementInputError,
    apply_settled_transfers,
    check_transfers,
    compute_settlement,
    minimal_transfers,
    net_balances,
    transfer_breakdown,
)
from tabsplit.services.itemized_service import build_itemized_expense


def weighted(expense_id, payer, amount, weights, currency="USD", description=""):
    return LegacyExpense(
        id=expense_id,
        payer_id=payer,
        amount=Decimal(amount),
        currency=currency,
        weights={pid: Decimal(w) for pid, w in weights.items()},
        split_type=SplitType.WEIGHTED,
        description=description,
    )


def equal(expense_id, payer, amount, people, currency="USD", description=""):
    return LegacyExpense.equal(expense_id, payer, Decimal(amount), currency, people, description=description)


def as_tuples(transfers):
    return sorted((t.from_id, t.to_id, t.amount) for t in transfers)


def test_one_creditor_two_debtors_needs_two_transfers():
    expenses = [weighted("e1", "alice", "30.00", {"bob": 1, "carol": 2})]

    result = compute_settlement(expenses)

    assert result.net_balances == {
        "alice": Decimal("30.00"),
        "bob": Decimal("-10.00"),
        "carol": Decimal("-20.00"),
    }
    assert as_tuples(result.active_transfers) == [
        ("bob", "alice", Decimal("10.00")),
        ("carol", "alice", Decimal("20.00")),
    ]
    assert result.settled_transfers == ()


def test_largest_debtor_pays_first():
    expenses = [weighted("e1", "alice", "30.00", {"bob": 1, "carol": 2})]

    result = compute_settlement(expenses)

    assert result.active_transfers[0] == Transfer("carol", "alice", Decimal("20.00"))


def test_transfer_count_is_at_most_n_minus_one():
    expenses = [
        equal("e1", "alice", "90.00", ["alice", "bob", "carol", "dave"]),
        equal("e2", "bob", "45.50", ["bob", "carol", "erin"]),
        weighted("e3", "carol", "60.00", {"alice": 1, "dave": 3, "erin": 2}),
        equal("e4", "dave", "12.01", ["alice", "bob", "carol"]),
    ]

    result = compute_settlement(expenses)

    assert len(result.active_transfers) <= len(result.net_balances) - 1
    assert sum(result.net_balances.values()) == 0
    for pid, balance in result.net_balances.items():
        incoming = sum(t.amount for t in result.active_transfers if t.to_id == pid)
        outgoing = sum(t.amount for t in result.active_transfers if t.from_id == pid)
        assert incoming - outgoing == balance


def test_balanced_trip_needs_no_transfers():
    expenses = [
        equal("e1", "alice", "20.00", ["alice", "bob"]),
        equal("e2", "bob", "20.00", ["alice", "bob"]),
    ]

    result = compute_settlement(expenses)

    assert result.net_balances == {}
    assert result.active_transfers == ()
    assert result.person_summaries["alice"].total_paid == Decimal("20.00")
    assert result.person_summaries["alice"].net == 0


def test_no_expenses_uses_default_currency():
    result = compute_settlement([], default_currency="eur")

    assert result.currency == "EUR"
    assert result.active_transfers == ()


def test_itemized_and_legacy_expenses_settle_together():
    dinner = build_itemized_expense(
        expense_id="dinner",
        payer_id="alice",
        currency="USD",
        items=[
            LineItem(
                id="pho",
                name="Pho",
                quantity=Decimal(1),
                unit_price=Decimal("14.00"),
                assignment=EvenAssignment(("bob",)),
            ),
            LineItem(
                id="rolls",
                name="Rolls",
                quantity=Decimal(1),
                unit_price=Decimal("8.00"),
                assignment=EvenAssignment(("alice", "bob")),
            ),
        ],
        extras=Extras(),
        participant_ids=["alice", "bob"],
    )
    taxi = equal("taxi", "bob", "10.00", ["alice", "bob"])

    result = compute_settlement([dinner, taxi])

    # bob owes 18 for dinner, alice owes 5 for the taxi
    assert result.net_balances == {"alice": Decimal("13.00"), "bob": Decimal("-13.00")}
    assert list(result.active_transfers) == [Transfer("bob", "alice", Decimal("13.00"))]


def test_settled_transfers_move_out_of_active():
    expenses = [weighted("e1", "alice", "30.00", {"bob": 1, "carol": 2})]
    paid = [Transfer("bob", "alice", Decimal("10.00"))]

    result = compute_settlement(expenses, paid)

    assert as_tuples(result.active_transfers) == [("carol", "alice", Decimal("20.00"))]
    assert list(result.settled_transfers) == paid


def test_filtering_is_idempotent():
    expenses = [weighted("e1", "alice", "30.00", {"bob": 1, "carol": 2})]
    first = compute_settlement(expenses)

    settled = list(first.active_transfers)
    second = compute_settlement(expenses, settled)
    third = compute_settlement(expenses, settled)

    assert second.active_transfers == ()
    assert second == third
    assert as_tuples(second.settled_transfers) == as_tuples(first.active_transfers)


def test_settled_records_are_used_once():
    transfers = [Transfer("bob", "alice", Decimal("5.00")), Transfer("bob", "carol", Decimal("5.00"))]
    settled = [Transfer("bob", "alice", Decimal("5.00"))]

    active, done = apply_settled_transfers(transfers, settled, Decimal("0.01"))

    assert active == [Transfer("bob", "carol", Decimal("5.00"))]
    assert done == settled


def test_unmatched_settled_records_are_kept_as_history():
    transfers = [Transfer("bob", "alice", Decimal("5.00"))]
    settled = [Transfer("carol", "alice", Decimal("2.00"))]

    active, done = apply_settled_transfers(transfers, settled, Decimal("0.01"))

    assert active == transfers
    assert done == settled


def test_settled_amount_must_match_within_one_unit():
    transfers = [Transfer("bob", "alice", Decimal("5.00"))]

    active, _ = apply_settled_transfers(transfers, [Transfer("bob", "alice", Decimal("4.98"))], Decimal("0.01"))
    assert active == transfers

    active, _ = apply_settled_transfers(transfers, [Transfer("bob", "alice", Decimal("4.99"))], Decimal("0.01"))
    assert active == []


def test_mixed_currencies_are_rejected():
    expenses = [
        equal("e1", "alice", "10.00", ["alice", "bob"]),
        equal("e2", "bob", "1000", ["alice", "bob"], currency="JPY"),
    ]

    with pytest.raises(SettlementInputError):
        compute_settlement(expenses)


def test_money_leak_is_an_integrity_error():
    summaries = {
        "alice": PersonSummary("alice", total_paid=Decimal("10.00"), total_owed=Decimal("0")),
        "bob": PersonSummary("bob", total_paid=Decimal("0"), total_owed=Decimal("5.00")),
    }

    with pytest.raises(DataIntegrityError):
        net_balances(summaries, Decimal("0.01"))


def itemized_with_amounts(amounts, total="10.00"):
    return ItemizedExpense(
        id="e1",
        payer_id="alice",
        amount=Decimal(total),
        currency="USD",
        items=(),
        extras=Extras(),
        allocation=AllocationRule.for_currency("USD"),
        participant_amounts=amounts,
    )


def test_itemized_amounts_must_add_up_to_the_expense():
    with pytest.raises(ModelValidationError) as exc:
        itemized_with_amounts({"bob": Decimal("5.00")})
    assert "sum to 5.00" in str(exc.value)


@pytest.mark.parametrize(
    "amounts",
    [
        {"alice": Decimal("5.005"), "bob": Decimal("4.995")},
        {"alice": Decimal("12.00"), "bob": Decimal("-2.00")},
        {"alice": "10.00"},
    ],
)
def test_itemized_amounts_must_be_whole_non_negative_units(amounts):
    with pytest.raises(ModelValidationError):
        itemized_with_amounts(amounts)


def test_itemized_amounts_that_add_up_are_accepted():
    expense = itemized_with_amounts({"alice": Decimal("3.34"), "bob": Decimal("6.66")})
    assert expense.shares() == {"alice": Decimal("3.34"), "bob": Decimal("6.66")}


def test_zero_decimal_settlement():
    expenses = [equal("e1", "alice", "1000", ["alice", "bob", "carol"], currency="JPY")]

    result = compute_settlement(expenses)

    assert result.currency == "JPY"
    assert sum(t.amount for t in result.active_transfers) == Decimal("666")
    assert all(t.amount == t.amount.to_integral_value() for t in result.active_transfers)


def test_minimal_transfers_ties_break_by_id():
    balances = {"zoe": Decimal("5"), "amy": Decimal("5"), "bob": Decimal("-5"), "cat": Decimal("-5")}

    transfers = minimal_transfers(balances, 2)

    assert transfers == [
        Transfer("bob", "amy", Decimal("5.00")),
        Transfer("cat", "zoe", Decimal("5.00")),
    ]


def test_check_transfers_flags_bad_lists():
    balances = {"alice": Decimal("10.00"), "bob": Decimal("-10.00")}

    assert check_transfers(balances, [Transfer("bob", "alice", Decimal("10.00"))], Decimal("0.01")) == []
    problems = check_transfers(
        balances,
        [Transfer("bob", "bob", Decimal("10.00")), Transfer("bob", "alice", Decimal("3.00"))],
        Decimal("0.01"),
    )
    assert any("same payer and receiver" in p for p in problems)
    assert any("unsettled" in p for p in problems)


def test_transfer_breakdown_explains_the_debt():
    expenses = [
        weighted("dinner", "alice", "30.00", {"bob": 1, "carol": 2}, description="Dinner"),
        equal("taxi", "bob", "12.00", ["alice", "bob", "carol"], description="Taxi"),
    ]
    result = compute_settlement(expenses)
    assert as_tuples(result.active_transfers) == [
        ("bob", "alice", Decimal("2.00")),
        ("carol", "alice", Decimal("24.00")),
    ]

    carol = transfer_breakdown("carol", "alice", Decimal("24.00"), expenses)
    assert [row.net_contribution for row in carol.expenses] == [Decimal("20.00"), Decimal("0")]

    bob = transfer_breakdown("bob", "alice", Decimal("2.00"), expenses)
    assert [row.net_contribution for row in bob.expenses] == [Decimal("10.00"), Decimal("-4.00")]
    assert bob.direct_total == Decimal("6.00")
    assert bob.expenses[1].from_paid == Decimal("12.00")
