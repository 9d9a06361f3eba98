# backend/tabsplit/domain/allocation.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, localcontext
from typing import Dict, Iterable, List, Mapping, Sequence

from tabsplit.domain.models import (
    AbsoluteSplitMode,
    DiscountExtra,
    Extras,
    FeeExtra,
    ItemContribution,
    LineItem,
    ParticipantBreakdown,
    PercentBase,
    TaxExtra,
)
from tabsplit.domain.money import WORKING_CONTEXT

logger = logging.getLogger(__name__)

ZERO = Decimal(0)
HUNDRED = Decimal(100)


@dataclass
class _Ledger:
    """
    Running, unrounded amounts for one participant while extras are applied.

    discounts is accumulated as a negative number.
    """
    participant_id: str
    item_subtotal: Decimal = ZERO
    taxable_subtotal: Decimal = ZERO
    tax: Decimal = ZERO
    tip: Decimal = ZERO
    fees: Decimal = ZERO
    discounts: Decimal = ZERO
    contributions: List[ItemContribution] = field(default_factory=list)
    fees_by_name: Dict[str, Decimal] = field(default_factory=dict)
    discounts_by_name: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def has_items(self) -> bool:
        return bool(self.contributions)

    @property
    def post_discount(self) -> Decimal:
        return self.item_subtotal + self.discounts

    @property
    def post_tax(self) -> Decimal:
        return self.post_discount + self.tax

    @property
    def post_fees(self) -> Decimal:
        return self.post_tax + self.fees

    @property
    def total(self) -> Decimal:
        return self.post_fees + self.tip

    def base_value(self, base: PercentBase) -> Decimal:
        if base is PercentBase.PRE_TAX_ITEM_SUBTOTALS:
            return self.item_subtotal
        if base is PercentBase.TAXABLE_ITEM_SUBTOTALS_ONLY:
            return self.taxable_subtotal
        if base is PercentBase.POST_DISCOUNT_ITEM_SUBTOTALS:
            return self.post_discount
        if base is PercentBase.POST_TAX_SUBTOTALS:
            return self.post_tax
        return self.post_fees

    def to_breakdown(self) -> ParticipantBreakdown:
        return ParticipantBreakdown(
            participant_id=self.participant_id,
            item_subtotal=self.item_subtotal,
            tax_allocated=self.tax,
            tip_allocated=self.tip,
            fees_allocated=self.fees,
            discounts_allocated=self.discounts,
            rounding_adjustment=ZERO,
            total=self.total,
            items=tuple(self.contributions),
            fees_by_name=dict(self.fees_by_name),
            discounts_by_name=dict(self.discounts_by_name),
        )


Ledgers = Dict[str, _Ledger]


def _non_negative(value: Decimal) -> Decimal:
    return value if value > 0 else ZERO


def split_evenly(total: Decimal, participant_ids: Sequence[str]) -> Dict[str, Decimal]:
    if not participant_ids:
        return {}
    each = total / len(participant_ids)
    return {pid: each for pid in participant_ids}


def split_proportionally(
    total: Decimal,
    weights: Mapping[str, Decimal],
    fallback_ids: Sequence[str],
) -> Dict[str, Decimal]:
    """
    Spread `total` proportionally to `weights`.

    When every weight is zero the total is split evenly over fallback_ids
    instead, so a fixed amount is never lost.
    """
    weight_sum = sum(weights.values(), ZERO)
    if weight_sum == 0:
        return split_evenly(total, fallback_ids)
    return {pid: total * w / weight_sum for pid, w in weights.items()}


def _holders(ledgers: Ledgers) -> List[str]:
    return [pid for pid, ledger in ledgers.items() if ledger.has_items]


def _percent_amounts(ledgers: Ledgers, base: PercentBase, percent: Decimal) -> Dict[str, Decimal]:
    # Each participant pays the percentage of their own contribution to the base,
    # which is the total charge allocated proportionally to that base.
    return {
        pid: _non_negative(ledger.base_value(base)) * percent / HUNDRED
        for pid, ledger in ledgers.items()
    }


def _absolute_amounts(ledgers: Ledgers, value: Decimal, split_mode: AbsoluteSplitMode) -> Dict[str, Decimal]:
    holders = _holders(ledgers)
    if split_mode is AbsoluteSplitMode.EVEN_ACROSS_PARTICIPANTS:
        return split_evenly(value, holders)
    weights = {pid: _non_negative(ledger.post_discount) for pid, ledger in ledgers.items()}
    return split_proportionally(value, weights, holders)


def _resolve_fee_like(ledgers: Ledgers, extra: FeeExtra) -> Dict[str, Decimal]:
    if extra.is_percent:
        return _percent_amounts(ledgers, extra.base, extra.value)
    return _absolute_amounts(ledgers, extra.value, extra.split_mode)


def _total(amounts: Mapping[str, Decimal]) -> Decimal:
    return sum(amounts.values(), ZERO)


# --------------------------------------------------------------------------
# Steps
# --------------------------------------------------------------------------


def assign_items(items: Iterable[LineItem], ledgers: Ledgers) -> None:
    """
    Step 1: per-participant item subtotals plus the contribution audit trail.
    """
    for item in items:
        item_total = item.item_total
        shares = item.assignment.split(item_total)
        for pid, amount in shares.items():
            ledger = ledgers[pid]
            ledger.item_subtotal += amount
            if item.taxable:
                ledger.taxable_subtotal += amount
            ledger.contributions.append(
                ItemContribution(
                    item_id=item.id,
                    name=item.name,
                    amount=amount,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    share=item.assignment.share_of(pid),
                )
            )
        logger.debug("item %s total=%s split=%s", item.id, item_total, shares)


def apply_discount(ledgers: Ledgers, discount: DiscountExtra) -> None:
    """
    Steps 2 and 4. The discount is clamped per participant so that the
    running amount it reduces (post-discount before tax, post-tax after)
    never drops below zero. Anything clamped off is absorbed.
    """
    amounts = _resolve_fee_like(ledgers, discount)
    applied = ZERO
    for pid, amount in amounts.items():
        ledger = ledgers[pid]
        running = ledger.post_discount if discount.apply_before_tax else ledger.post_tax
        taken = min(_non_negative(amount), _non_negative(running))
        ledger.discounts -= taken
        ledger.discounts_by_name[discount.name] = ledger.discounts_by_name.get(discount.name, ZERO) - taken
        applied += taken
    logger.debug(
        "discount %s (before_tax=%s) requested=%s applied=%s",
        discount.id,
        discount.apply_before_tax,
        _total(amounts),
        applied,
    )


def apply_tax(ledgers: Ledgers, tax: TaxExtra) -> None:
    """
    Step 3. A participant with nothing in the tax base owes no tax.
    """
    if tax.is_percent:
        amounts = _percent_amounts(ledgers, tax.base, tax.value)
    else:
        weights = {pid: _non_negative(ledger.post_discount) for pid, ledger in ledgers.items()}
        amounts = split_proportionally(tax.value, weights, _holders(ledgers))
    for pid, amount in amounts.items():
        ledgers[pid].tax += amount
    logger.debug("tax %s total=%s", tax.kind.value, _total(amounts))


def apply_fee(ledgers: Ledgers, fee: FeeExtra) -> None:
    """Step 5."""
    amounts = _resolve_fee_like(ledgers, fee)
    for pid, amount in amounts.items():
        ledger = ledgers[pid]
        ledger.fees += amount
        ledger.fees_by_name[fee.name] = ledger.fees_by_name.get(fee.name, ZERO) + amount
    logger.debug("fee %s total=%s", fee.id, _total(amounts))


def apply_tip(ledgers: Ledgers, tip: TaxExtra) -> None:
    """Step 6."""
    if tip.is_percent:
        amounts = _percent_amounts(ledgers, tip.base, tip.value)
    else:
        weights = {pid: _non_negative(ledger.post_fees) for pid, ledger in ledgers.items()}
        amounts = split_proportionally(tip.value, weights, _holders(ledgers))
    for pid, amount in amounts.items():
        ledgers[pid].tip += amount
    logger.debug("tip %s total=%s", tip.kind.value, _total(amounts))


def allocate_items(
    items: Sequence[LineItem],
    extras: Extras,
    participant_ids: Sequence[str],
) -> Dict[str, ParticipantBreakdown]:
    """
    Compute unrounded per-participant breakdowns for an itemized receipt.

    The steps run in a fixed order because later percent bases read the
    results of earlier ones:

      1. item subtotals
      2. discounts with apply_before_tax
      3. tax
      4. remaining discounts
      5. fees
      6. tip

    participant_ids fixes the key order of the result; every assignee must be
    in it. Inputs are expected to have passed validate_allocation_inputs().
    """
    with localcontext(WORKING_CONTEXT):
        ledgers: Ledgers = {pid: _Ledger(participant_id=pid) for pid in participant_ids}

        assign_items(items, ledgers)
        for discount in extras.pre_tax_discounts:
            apply_discount(ledgers, discount)
        if extras.tax is not None:
            apply_tax(ledgers, extras.tax)
        for discount in extras.post_tax_discounts:
            apply_discount(ledgers, discount)
        for fee in extras.fees:
            apply_fee(ledgers, fee)
        if extras.tip is not None:
            apply_tip(ledgers, extras.tip)

        return {pid: ledger.to_breakdown() for pid, ledger in ledgers.items()}
