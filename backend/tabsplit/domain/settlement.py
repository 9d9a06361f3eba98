# backend/tabsplit/domain/settlement.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from tabsplit.domain.ledger import Expense, PersonSummary, SettlementResult, Transfer
from tabsplit.domain.money import (
    WORKING_CONTEXT,
    RoundingMode,
    precision,
    round_to_places,
    smallest_unit,
)
from tabsplit.domain.rounding import DataIntegrityError

logger = logging.getLogger(__name__)

ZERO = Decimal(0)


class SettlementInputError(ValueError):
    """Raised when the expenses handed to the settlement engine cannot be combined."""


def settlement_currency(expenses: Sequence[Expense], default: str = "USD") -> str:
    currencies = {e.currency.strip().upper() for e in expenses}
    if len(currencies) > 1:
        raise SettlementInputError(f"expenses use more than one currency: {sorted(currencies)}")
    return currencies.pop() if currencies else default.strip().upper()


def person_summaries(expenses: Sequence[Expense]) -> Dict[str, PersonSummary]:
    """
    Total paid and total owed per participant across a trip.

    Legacy and itemized expenses are treated alike through Expense.shares().
    """
    paid: Dict[str, Decimal] = {}
    owed: Dict[str, Decimal] = {}

    with localcontext(WORKING_CONTEXT):
        for expense in expenses:
            paid[expense.payer_id] = paid.get(expense.payer_id, ZERO) + expense.amount
            owed.setdefault(expense.payer_id, ZERO)
            shares = expense.shares()
            for pid, share in shares.items():
                owed[pid] = owed.get(pid, ZERO) + share
                paid.setdefault(pid, ZERO)
            logger.debug(
                "expense %s payer=%s amount=%s shares=%s",
                expense.id, expense.payer_id, expense.amount, shares,
            )

    return {
        pid: PersonSummary(participant_id=pid, total_paid=paid[pid], total_owed=owed[pid])
        for pid in sorted(paid)
    }


def net_balances(
    summaries: Mapping[str, PersonSummary],
    unit: Decimal,
) -> Dict[str, Decimal]:
    """
    Net balance per participant (positive: is owed money).

    Raises DataIntegrityError if the balances do not sum to zero, and drops
    participants within one smallest unit of zero.
    """
    with localcontext(WORKING_CONTEXT):
        balances = {pid: s.net for pid, s in summaries.items()}
        total = sum(balances.values(), ZERO)
    if abs(total) >= unit:
        logger.error("net balances sum to %s instead of zero", total)
        raise DataIntegrityError(f"net balances sum to {total}; money was created or destroyed")
    return {pid: b for pid, b in balances.items() if abs(b) >= unit}


@dataclass
class _Balance:
    participant_id: str
    amount: Decimal


def minimal_transfers(
    balances: Mapping[str, Decimal],
    places: int,
) -> List[Transfer]:
    """
    Greedy largest-debtor / largest-creditor netting.

    Creditors are ordered by balance descending and debtors by debt
    descending, ties broken by participant id. Each step pays
    min(debt, credit) rounded half-up to `places`; a side leaves once it is
    below one smallest unit. Yields at most n - 1 transfers for n non-zero
    balances.
    """
    unit = smallest_unit(places)
    creditors = [_Balance(pid, b) for pid, b in balances.items() if b >= unit]
    debtors = [_Balance(pid, -b) for pid, b in balances.items() if -b >= unit]
    creditors.sort(key=lambda x: (-x.amount, x.participant_id))
    debtors.sort(key=lambda x: (-x.amount, x.participant_id))

    transfers: List[Transfer] = []
    ci = di = 0
    with localcontext(WORKING_CONTEXT):
        while ci < len(creditors) and di < len(debtors):
            creditor = creditors[ci]
            debtor = debtors[di]
            amount = round_to_places(min(creditor.amount, debtor.amount), places, RoundingMode.ROUND_HALF_UP)

            if amount > 0:
                transfers.append(Transfer(from_id=debtor.participant_id, to_id=creditor.participant_id, amount=amount))
                logger.debug("transfer %s -> %s %s", debtor.participant_id, creditor.participant_id, amount)

            creditor.amount -= amount
            debtor.amount -= amount
            if creditor.amount < unit:
                ci += 1
            if debtor.amount < unit:
                di += 1

    return transfers


def apply_settled_transfers(
    transfers: Sequence[Transfer],
    settled: Sequence[Transfer],
    tolerance: Decimal,
) -> Tuple[List[Transfer], List[Transfer]]:
    """
    Split computed transfers into (active, settled).

    A computed transfer counts as settled when a recorded settled transfer
    has the same (from, to) pair and an amount within `tolerance`. Each
    record is used at most once. Records that match nothing are still
    returned in the settled list as history.
    """
    remaining = list(settled)
    active: List[Transfer] = []
    matched: List[Transfer] = []

    for transfer in transfers:
        hit: Optional[int] = None
        for idx, record in enumerate(remaining):
            if (
                record.from_id == transfer.from_id
                and record.to_id == transfer.to_id
                and abs(record.amount - transfer.amount) <= tolerance
            ):
                hit = idx
                break
        if hit is None:
            active.append(transfer)
        else:
            matched.append(remaining.pop(hit))

    return active, matched + remaining


def check_transfers(
    balances: Mapping[str, Decimal],
    transfers: Sequence[Transfer],
    unit: Decimal,
) -> List[str]:
    """
    Consistency checks on a computed transfer list. Returns problems found.
    """
    issues: List[str] = []
    seen: set[Tuple[str, str]] = set()
    for t in transfers:
        if t.from_id == t.to_id:
            issues.append(f"transfer has the same payer and receiver: {t.from_id}")
        if t.amount <= 0:
            issues.append(f"transfer {t.from_id}->{t.to_id} has non-positive amount {t.amount}")
        if (t.from_id, t.to_id) in seen:
            issues.append(f"duplicate transfer {t.from_id}->{t.to_id}")
        seen.add((t.from_id, t.to_id))
        for pid in (t.from_id, t.to_id):
            if pid not in balances:
                issues.append(f"transfer references {pid}, who has no open balance")

    # Each transfer is rounded once, so allow one unit of drift per transfer.
    tolerance = unit * max(1, len(transfers))
    for pid, balance in balances.items():
        incoming = sum((t.amount for t in transfers if t.to_id == pid), ZERO)
        outgoing = sum((t.amount for t in transfers if t.from_id == pid), ZERO)
        if abs(incoming - outgoing - balance) > tolerance:
            issues.append(f"transfers leave {pid} with {balance - (incoming - outgoing)} unsettled")
    return issues


def compute_settlement(
    expenses: Sequence[Expense],
    settled_transfers: Sequence[Transfer] = (),
    *,
    default_currency: str = "USD",
) -> SettlementResult:
    """
    Net a trip's expenses into the minimal set of transfers.

    Returns net balances, the transfers still to be made, and the transfers
    already recorded as settled. Raises DataIntegrityError if money does not
    balance and SettlementInputError for mixed currencies.
    """
    currency = settlement_currency(expenses, default_currency)
    places = precision(currency)
    unit = smallest_unit(places)

    summaries = person_summaries(expenses)
    balances = net_balances(summaries, unit)
    transfers = minimal_transfers(balances, places)

    problems = check_transfers(balances, transfers, unit)
    if problems:
        for problem in problems:
            logger.error("settlement check failed: %s", problem)
        raise DataIntegrityError("; ".join(problems))

    active, settled = apply_settled_transfers(transfers, settled_transfers, unit)
    logger.debug(
        "settlement for %d expense(s): %d active, %d settled",
        len(expenses), len(active), len(settled),
    )
    return SettlementResult(
        currency=currency,
        net_balances=balances,
        active_transfers=tuple(active),
        settled_transfers=tuple(settled),
        person_summaries=summaries,
    )


# --------------------------------------------------------------------------
# Transfer breakdown
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class ExpenseContribution:
    expense_id: str
    description: str
    from_paid: Decimal
    from_owes: Decimal
    to_paid: Decimal
    to_owes: Decimal
    net_contribution: Decimal


@dataclass(frozen=True)
class TransferBreakdown:
    from_id: str
    to_id: str
    total_amount: Decimal
    expenses: Tuple[ExpenseContribution, ...]

    @property
    def direct_total(self) -> Decimal:
        return sum((e.net_contribution for e in self.expenses), ZERO)


def transfer_breakdown(
    from_id: str,
    to_id: str,
    amount: Decimal,
    expenses: Sequence[Expense],
) -> TransferBreakdown:
    """
    Show how each expense feeds the debt between two people.

    net_contribution is positive when `to` paid and `from` took a share,
    negative when `from` paid and `to` took a share, and zero when a third
    person paid.
    """
    rows: List[ExpenseContribution] = []
    for expense in expenses:
        shares = expense.shares()
        from_owes = shares.get(from_id, ZERO)
        to_owes = shares.get(to_id, ZERO)
        if expense.payer_id == to_id:
            net = from_owes
        elif expense.payer_id == from_id:
            net = -to_owes
        else:
            net = ZERO
        rows.append(
            ExpenseContribution(
                expense_id=expense.id,
                description=expense.description,
                from_paid=expense.amount if expense.payer_id == from_id else ZERO,
                from_owes=from_owes,
                to_paid=expense.amount if expense.payer_id == to_id else ZERO,
                to_owes=to_owes,
                net_contribution=net,
            )
        )
    return TransferBreakdown(from_id=from_id, to_id=to_id, total_amount=amount, expenses=tuple(rows))
