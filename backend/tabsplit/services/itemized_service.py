# backend/tabsplit/services/itemized_service.py
from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from tabsplit.domain.allocation import allocate_items
from tabsplit.domain.ledger import ItemizedExpense
from tabsplit.domain.models import AllocationRule, Extras, LineItem, ParticipantBreakdown
from tabsplit.domain.money import precision
from tabsplit.domain.rounding import round_breakdowns
from tabsplit.domain.serialization import extras_to_record, item_to_record
from tabsplit.domain.validation import (
    ValidationIssue,
    ValidationLimits,
    validate_allocation_inputs,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AllocationResult:
    participant_amounts: Dict[str, Decimal]
    participant_breakdown: Dict[str, ParticipantBreakdown]
    grand_total: Decimal
    warnings: Tuple[ValidationIssue, ...] = ()


@dataclass(frozen=True)
class AllocationOutcome:
    """
    Either a result or the issues that prevented one.

    When only warnings are present and they were not confirmed, result is
    None and needs_confirmation is True.
    """
    result: Optional[AllocationResult] = None
    errors: Tuple[ValidationIssue, ...] = ()
    warnings: Tuple[ValidationIssue, ...] = field(default=())

    @property
    def ok(self) -> bool:
        return self.result is not None

    @property
    def needs_confirmation(self) -> bool:
        return self.result is None and not self.errors and bool(self.warnings)

    @property
    def issues(self) -> List[ValidationIssue]:
        return list(self.errors) + list(self.warnings)


class AllocationRejected(ValueError):
    """Raised by build_itemized_expense when the outcome has no result."""

    def __init__(self, outcome: AllocationOutcome):
        self.outcome = outcome
        first = outcome.issues[0].message if outcome.issues else "allocation rejected"
        super().__init__(first)


def _ordered_participants(payer_id: str, participant_ids: Sequence[str]) -> List[str]:
    ordered = list(dict.fromkeys(participant_ids))
    if payer_id not in ordered:
        ordered.append(payer_id)
    return ordered


def input_digest(
    items: Sequence[LineItem],
    extras: Extras,
    payer_id: str,
    participant_ids: Sequence[str],
) -> str:
    """
    Stable key for a draft that has no expense id yet.

    Covers every item field (custom share values included) and the extras.
    """
    draft = {
        "payer_id": payer_id,
        "participant_ids": list(participant_ids),
        "items": [item_to_record(item) for item in items],
        "extras": extras_to_record(extras),
    }
    return hashlib.sha256(json.dumps(draft, sort_keys=True).encode("utf-8")).hexdigest()


def calculate_itemized_allocation(
    items: Sequence[LineItem],
    extras: Extras,
    allocation: AllocationRule,
    payer_id: str,
    participant_ids: Sequence[str],
    *,
    expense_id: Optional[str] = None,
    limits: ValidationLimits = ValidationLimits(),
    confirm_warnings: bool = False,
) -> AllocationOutcome:
    """
    Validate, allocate and round an itemized receipt.

    Validation problems come back in the outcome; a broken money invariant
    raises DataIntegrityError. The payer is always part of the breakdown,
    with zero amounts when they took no items.
    """
    items = list(items)
    errors, warnings = validate_allocation_inputs(items, extras, payer_id, participant_ids, limits)
    if errors:
        return AllocationOutcome(errors=tuple(errors), warnings=tuple(warnings))
    if warnings and not confirm_warnings:
        logger.warning("itemized allocation blocked by %d unconfirmed warning(s)", len(warnings))
        return AllocationOutcome(warnings=tuple(warnings))

    participants = _ordered_participants(payer_id, participant_ids)
    seed_key = expense_id or input_digest(items, extras, payer_id, participants)

    unrounded = allocate_items(items, extras, participants)
    breakdowns, grand_total = round_breakdowns(
        unrounded, allocation.rounding, payer_id=payer_id, seed_key=seed_key
    )
    amounts = {pid: b.total for pid, b in breakdowns.items()}
    logger.debug("itemized allocation grand_total=%s amounts=%s", grand_total, amounts)

    return AllocationOutcome(
        result=AllocationResult(
            participant_amounts=amounts,
            participant_breakdown=breakdowns,
            grand_total=grand_total,
            warnings=tuple(warnings),
        ),
        warnings=tuple(warnings),
    )


def currency_mismatch(allocation: AllocationRule, currency: str) -> Optional[ValidationIssue]:
    if allocation.rounding.precision == precision(currency):
        return None
    return ValidationIssue(
        field="allocation.rounding.precision",
        code="currency_mismatch",
        message=f"{currency} uses {precision(currency)} decimal places, not {allocation.rounding.precision}.",
    )


def build_itemized_expense(
    *,
    expense_id: str,
    payer_id: str,
    currency: str,
    items: Sequence[LineItem],
    extras: Extras,
    allocation: Optional[AllocationRule] = None,
    participant_ids: Sequence[str],
    description: str = "",
    trip_id: Optional[str] = None,
    limits: ValidationLimits = ValidationLimits(),
    confirm_warnings: bool = False,
) -> ItemizedExpense:
    """
    Run the whole pipeline and return the expense record to persist.

    Editing an expense means calling this again with the edited inputs.
    """
    if allocation is None:
        allocation = AllocationRule.for_currency(currency)
    mismatch = currency_mismatch(allocation, currency)
    if mismatch is not None:
        raise AllocationRejected(AllocationOutcome(errors=(mismatch,)))

    outcome = calculate_itemized_allocation(
        items,
        extras,
        allocation,
        payer_id,
        participant_ids,
        expense_id=expense_id,
        limits=limits,
        confirm_warnings=confirm_warnings,
    )
    if outcome.result is None:
        raise AllocationRejected(outcome)

    result = outcome.result
    return ItemizedExpense(
        id=expense_id,
        payer_id=payer_id,
        amount=result.grand_total,
        currency=currency,
        items=tuple(items),
        extras=extras,
        allocation=allocation,
        participant_amounts=result.participant_amounts,
        participant_breakdown=result.participant_breakdown,
        description=description,
        trip_id=trip_id,
    )
