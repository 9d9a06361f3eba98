# backend/tabsplit/domain/split_logic.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal, localcontext
from typing import Dict, List, Mapping, Sequence, Tuple

from tabsplit.domain.money import WORKING_CONTEXT, smallest_unit


class SplitLogicError(ValueError):
    """Raised when split inputs are invalid."""


@dataclass(frozen=True)
class Allocation:
    """
    Allocation of an integer number of minor units across participants.

    amounts_units is ordered to match the participants order.
    """
    total_units: int
    participants: Tuple[str, ...]
    amounts_units: Tuple[int, ...]

    def as_dict(self) -> Dict[str, int]:
        return dict(zip(self.participants, self.amounts_units, strict=True))


def to_minor_units(amount: Decimal, places: int) -> int:
    """
    Decimal amount -> integer minor units. 12.34 at 2 places -> 1234.

    The amount must already be at currency precision.
    """
    if not isinstance(amount, Decimal):
        raise SplitLogicError("amount must be a Decimal")
    with localcontext(WORKING_CONTEXT):
        scaled = amount.scaleb(places)
    if scaled != scaled.to_integral_value():
        raise SplitLogicError(f"amount {amount} has more than {places} decimal places")
    return int(scaled)


def from_minor_units(units: int, places: int) -> Decimal:
    return Decimal(units).scaleb(-places).quantize(smallest_unit(places))


def _normalize_participants(participants: Sequence[str]) -> List[str]:
    if not isinstance(participants, (list, tuple)):
        raise SplitLogicError("participants must be a sequence")
    if len(participants) == 0:
        raise SplitLogicError("participants must contain at least 1 participant")

    norm: List[str] = []
    for p in participants:
        if not isinstance(p, str):
            raise SplitLogicError("participant ids must be strings")
        if p.strip() == "":
            raise SplitLogicError("participant ids must be non-empty strings")
        norm.append(p)
    if len(set(norm)) != len(norm):
        raise SplitLogicError("participant ids must be unique")
    return norm


def split_units_evenly(total_units: int, participants: Sequence[str]) -> Allocation:
    """
    Split an integer number of minor units across participants:

      base = total_units // m
      remainder = total_units % m
      first 'remainder' participants get base + 1, rest get base
    """
    if isinstance(total_units, bool) or not isinstance(total_units, int):
        raise SplitLogicError("total_units must be an int")
    if total_units < 0:
        raise SplitLogicError("total_units must be >= 0")

    norm = _normalize_participants(participants)
    m = len(norm)
    base = total_units // m
    remainder = total_units % m

    amounts = [base + 1 if i < remainder else base for i in range(m)]
    if sum(amounts) != total_units:
        raise SplitLogicError("internal error: allocation does not sum to total")

    return Allocation(
        total_units=total_units,
        participants=tuple(norm),
        amounts_units=tuple(amounts),
    )


def split_units_by_weights(total_units: int, weights: Mapping[str, Decimal]) -> Allocation:
    """
    Split minor units proportionally to weights (largest remainder method).

    Every participant first gets floor(total * w / W). The leftover units go
    one each to the participants with the largest fractional parts; ties are
    resolved by the order of `weights`.
    """
    if isinstance(total_units, bool) or not isinstance(total_units, int):
        raise SplitLogicError("total_units must be an int")
    if total_units < 0:
        raise SplitLogicError("total_units must be >= 0")

    norm = _normalize_participants(list(weights))
    for pid in norm:
        w = weights[pid]
        if not isinstance(w, Decimal) or w < 0:
            raise SplitLogicError(f"weight for {pid} must be a Decimal >= 0")

    weight_sum = sum((weights[pid] for pid in norm), Decimal(0))
    if weight_sum == 0:
        raise SplitLogicError("weights must not all be zero")

    with localcontext(WORKING_CONTEXT):
        exact = [Decimal(total_units) * weights[pid] / weight_sum for pid in norm]
        floors = [int(x.to_integral_value(rounding=ROUND_FLOOR)) for x in exact]
        fractions = [x - f for x, f in zip(exact, floors)]

    leftover = total_units - sum(floors)
    order = sorted(range(len(norm)), key=lambda i: (-fractions[i], i))
    amounts = list(floors)
    for i in order[:leftover]:
        amounts[i] += 1

    if sum(amounts) != total_units:
        raise SplitLogicError("internal error: allocation does not sum to total")

    return Allocation(
        total_units=total_units,
        participants=tuple(norm),
        amounts_units=tuple(amounts),
    )


def split_amount(amount: Decimal, weights: Mapping[str, Decimal], places: int) -> Dict[str, Decimal]:
    """
    Convenience for legacy expenses: split a currency amount by weights and
    return per-participant Decimals that sum exactly to `amount`.
    """
    units = to_minor_units(amount, places)
    if len(set(weights.values())) <= 1:
        alloc = split_units_evenly(units, list(weights))
    else:
        alloc = split_units_by_weights(units, weights)
    return {pid: from_minor_units(u, places) for pid, u in alloc.as_dict().items()}
