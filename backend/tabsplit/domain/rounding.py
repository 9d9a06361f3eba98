# backend/tabsplit/domain/rounding.py
from __future__ import annotations

import hashlib
import logging
import random
from dataclasses import replace
from decimal import ROUND_HALF_EVEN, Decimal, localcontext
from typing import Dict, List, Mapping, Optional, Tuple

from tabsplit.domain.models import (
    ParticipantBreakdown,
    RemainderDistribution,
    RoundingConfig,
)
from tabsplit.domain.money import WORKING_CONTEXT, round_to_places

logger = logging.getLogger(__name__)

# Digits kept beyond currency precision before the configured mode applies.
GUARD_PLACES = 12


class DataIntegrityError(RuntimeError):
    """
    Raised when money is created or destroyed by a computation.

    This signals a bug, not bad input, and the result must not be persisted.
    """


def settle_residue(value: Decimal, places: int) -> Decimal:
    """
    Drop arithmetic residue from a 50-digit working value.

    Splitting 10.00 three ways sums back to 9.999...9, which FLOOR would
    otherwise round to 9.99. Values are snapped to GUARD_PLACES digits past
    the currency precision (half-even) so FLOOR and CEIL see 10.00.
    """
    return value.quantize(
        Decimal(1).scaleb(-(places + GUARD_PLACES)), rounding=ROUND_HALF_EVEN, context=WORKING_CONTEXT
    )


def stable_seed(key: str) -> int:
    """
    Deterministic integer seed from a string (independent of PYTHONHASHSEED).
    """
    return int.from_bytes(hashlib.sha256(key.encode("utf-8")).digest()[:8], "big")


def _allocated_ids(breakdowns: Mapping[str, ParticipantBreakdown]) -> List[str]:
    allocated = sorted(pid for pid, b in breakdowns.items() if b.total != 0)
    return allocated or sorted(breakdowns)


def select_remainder_recipient(
    breakdowns: Mapping[str, ParticipantBreakdown],
    config: RoundingConfig,
    payer_id: Optional[str] = None,
    seed_key: str = "",
) -> str:
    """
    Pick the single participant who absorbs the rounding remainder.

    LARGEST_SHARE  largest unrounded item subtotal, ties -> smallest id
    PAYER          the payer
    FIRST_LISTED   smallest id among participants with a non-zero total
    RANDOM         seeded from seed_key, so the same expense always picks
                   the same participant
    """
    if not breakdowns:
        raise DataIntegrityError("cannot distribute a remainder with no participants")

    mode = config.remainder_distribution
    if mode is RemainderDistribution.LARGEST_SHARE:
        return min(breakdowns, key=lambda pid: (-breakdowns[pid].item_subtotal, pid))

    if mode is RemainderDistribution.PAYER:
        if payer_id not in breakdowns:
            raise DataIntegrityError(f"payer {payer_id!r} is missing from the breakdown")
        return payer_id

    candidates = _allocated_ids(breakdowns)
    if mode is RemainderDistribution.FIRST_LISTED:
        return candidates[0]

    rng = random.Random(stable_seed(seed_key))
    return candidates[rng.randrange(len(candidates))]


def _round_breakdown(
    b: ParticipantBreakdown,
    total: Decimal,
    remainder: Decimal,
    places: int,
    config: RoundingConfig,
) -> ParticipantBreakdown:
    def r(value: Decimal) -> Decimal:
        return round_to_places(settle_residue(value, places), places, config.mode)

    rounded = replace(
        b,
        item_subtotal=r(b.item_subtotal),
        tax_allocated=r(b.tax_allocated),
        tip_allocated=r(b.tip_allocated),
        fees_allocated=r(b.fees_allocated),
        discounts_allocated=r(b.discounts_allocated),
        rounding_adjustment=Decimal(0),
        total=total,
        items=tuple(replace(c, amount=r(c.amount)) for c in b.items),
        fees_by_name={name: r(v) for name, v in b.fees_by_name.items()},
        discounts_by_name={name: r(v) for name, v in b.discounts_by_name.items()},
        remainder_applied=remainder,
    )
    # The adjustment absorbs the remainder plus any drift between the
    # independently rounded components and the rounded total.
    return replace(rounded, rounding_adjustment=total - rounded.components_sum)


def round_breakdowns(
    breakdowns: Mapping[str, ParticipantBreakdown],
    config: RoundingConfig,
    payer_id: Optional[str] = None,
    seed_key: str = "",
) -> Tuple[Dict[str, ParticipantBreakdown], Decimal]:
    """
    Round unrounded breakdowns to currency precision so they reconcile exactly.

    Each total is rounded on its own; the difference to the rounded grand
    total goes entirely to one participant chosen by
    select_remainder_recipient(). Returns (breakdowns, grand_total).

    Raises DataIntegrityError if the totals do not add up afterwards.
    """
    places = config.precision
    unit = config.smallest_unit

    with localcontext(WORKING_CONTEXT):
        unrounded_sum = sum((b.total for b in breakdowns.values()), Decimal(0))
        grand_total = round_to_places(settle_residue(unrounded_sum, places), places, config.mode)
        rounded_totals = {
            pid: round_to_places(settle_residue(b.total, places), places, config.mode)
            for pid, b in breakdowns.items()
        }
        remainder = grand_total - sum(rounded_totals.values(), Decimal(0))

        # Per-participant rounding error is below one unit, plus at most one
        # unit from rounding the grand total.
        if abs(remainder) > unit * (len(breakdowns) + 1):
            logger.error("rounding remainder %s exceeds bound for %d participants", remainder, len(breakdowns))
            raise DataIntegrityError(f"rounding remainder {remainder} is out of bounds")

        recipient = None
        if remainder != 0:
            recipient = select_remainder_recipient(breakdowns, config, payer_id=payer_id, seed_key=seed_key)
            logger.debug(
                "remainder %s assigned to %s (%s)", remainder, recipient, config.remainder_distribution.value
            )

        result: Dict[str, ParticipantBreakdown] = {}
        for pid, b in breakdowns.items():
            extra = remainder if pid == recipient else Decimal(0)
            result[pid] = _round_breakdown(b, rounded_totals[pid] + extra, extra, places, config)

        reconciled = sum((b.total for b in result.values()), Decimal(0))
        if reconciled != grand_total:
            logger.error("rounded totals %s do not match grand total %s", reconciled, grand_total)
            raise DataIntegrityError(
                f"rounded participant totals sum to {reconciled}, expected {grand_total}"
            )

    return result, grand_total
