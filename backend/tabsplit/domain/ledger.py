# backend/tabsplit/domain/ledger.py
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple, Union

from tabsplit.domain.models import (
    AllocationRule,
    Extras,
    LineItem,
    ModelValidationError,
    ParticipantBreakdown,
)
from tabsplit.domain.money import equal_within_precision, is_whole_units, precision
from tabsplit.domain.split_logic import split_amount


class SplitType(str, Enum):
    EQUAL = "equal"
    WEIGHTED = "weighted"
    ITEMIZED = "itemized"


def _check_common(expense_id: object, payer_id: object, amount: object, currency: object) -> None:
    for label, value in (("Expense.id", expense_id), ("Expense.payer_id", payer_id)):
        if not isinstance(value, str) or not value.strip():
            raise ModelValidationError(f"{label} must be a non-empty string")
    if not isinstance(amount, Decimal) or amount < 0:
        raise ModelValidationError("Expense.amount must be a Decimal >= 0")
    if not isinstance(currency, str) or not currency.strip():
        raise ModelValidationError("Expense.currency must be a non-empty string")
    if not is_whole_units(amount, precision(currency)):
        raise ModelValidationError(f"Expense.amount {amount} is finer than {currency} precision")


@dataclass(frozen=True)
class LegacyExpense:
    """
    Equal or weighted expense: the amount is split by participant weights.

    Equal splits are stored with every weight set to 1.
    """
    id: str
    payer_id: str
    amount: Decimal
    currency: str
    weights: Mapping[str, Decimal]
    split_type: SplitType = SplitType.EQUAL
    description: str = ""
    trip_id: Optional[str] = None

    def __post_init__(self) -> None:
        _check_common(self.id, self.payer_id, self.amount, self.currency)
        if self.split_type not in (SplitType.EQUAL, SplitType.WEIGHTED):
            raise ModelValidationError("LegacyExpense.split_type must be equal or weighted")
        weights = dict(self.weights)
        if not weights:
            raise ModelValidationError("LegacyExpense.weights must not be empty")
        for pid, w in weights.items():
            if not isinstance(pid, str) or not pid.strip():
                raise ModelValidationError("LegacyExpense weight keys must be non-empty strings")
            if not isinstance(w, Decimal) or w < 0:
                raise ModelValidationError(f"weight for {pid} must be a Decimal >= 0")
        if sum(weights.values(), Decimal(0)) <= 0:
            raise ModelValidationError("LegacyExpense.weights must not all be zero")
        object.__setattr__(self, "weights", weights)

    @classmethod
    def equal(cls, id: str, payer_id: str, amount: Decimal, currency: str, participant_ids, **kwargs):
        return cls(
            id=id,
            payer_id=payer_id,
            amount=amount,
            currency=currency,
            weights={pid: Decimal(1) for pid in participant_ids},
            split_type=SplitType.EQUAL,
            **kwargs,
        )

    def shares(self) -> Dict[str, Decimal]:
        # Sorted ids so leftover minor units land on the same people every time.
        ordered = {pid: self.weights[pid] for pid in sorted(self.weights)}
        return split_amount(self.amount, ordered, precision(self.currency))


@dataclass(frozen=True)
class ItemizedExpense:
    """
    Expense computed from receipt lines. participant_amounts sums to amount.
    """
    id: str
    payer_id: str
    amount: Decimal
    currency: str
    items: Tuple[LineItem, ...]
    extras: Extras
    allocation: AllocationRule
    participant_amounts: Mapping[str, Decimal]
    participant_breakdown: Mapping[str, ParticipantBreakdown] = field(default_factory=dict)
    description: str = ""
    trip_id: Optional[str] = None

    split_type = SplitType.ITEMIZED

    def __post_init__(self) -> None:
        _check_common(self.id, self.payer_id, self.amount, self.currency)
        object.__setattr__(self, "items", tuple(self.items))
        object.__setattr__(self, "participant_amounts", dict(self.participant_amounts))
        object.__setattr__(self, "participant_breakdown", dict(self.participant_breakdown))
        if not self.participant_amounts:
            raise ModelValidationError("ItemizedExpense.participant_amounts must not be empty")
        places = precision(self.currency)
        for pid, value in self.participant_amounts.items():
            if not isinstance(pid, str) or not pid.strip():
                raise ModelValidationError("ItemizedExpense participant ids must be non-empty strings")
            if not isinstance(value, Decimal) or value < 0:
                raise ModelValidationError(f"amount for {pid} must be a Decimal >= 0")
            if not is_whole_units(value, places):
                raise ModelValidationError(f"amount for {pid} is finer than {self.currency} precision")
        allocated = sum(self.participant_amounts.values(), Decimal(0))
        if not equal_within_precision(allocated, self.amount, self.currency):
            raise ModelValidationError(
                f"participant amounts sum to {allocated}, expected {self.amount}"
            )

    def shares(self) -> Dict[str, Decimal]:
        return dict(self.participant_amounts)


Expense = Union[LegacyExpense, ItemizedExpense]


@dataclass(frozen=True)
class Transfer:
    from_id: str
    to_id: str
    amount: Decimal

    def __post_init__(self) -> None:
        for label, value in (("Transfer.from_id", self.from_id), ("Transfer.to_id", self.to_id)):
            if not isinstance(value, str) or not value.strip():
                raise ModelValidationError(f"{label} must be a non-empty string")
        if not isinstance(self.amount, Decimal):
            raise ModelValidationError("Transfer.amount must be a Decimal")


@dataclass(frozen=True)
class PersonSummary:
    participant_id: str
    total_paid: Decimal
    total_owed: Decimal

    @property
    def net(self) -> Decimal:
        return self.total_paid - self.total_owed


@dataclass(frozen=True)
class SettlementResult:
    currency: str
    net_balances: Dict[str, Decimal]
    active_transfers: Tuple[Transfer, ...]
    settled_transfers: Tuple[Transfer, ...]
    person_summaries: Dict[str, PersonSummary] = field(default_factory=dict)
