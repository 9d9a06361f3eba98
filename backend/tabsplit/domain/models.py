# backend/tabsplit/domain/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, localcontext
from enum import Enum
from typing import ClassVar, Dict, Mapping, Optional, Tuple, Union

from tabsplit.domain.money import (
    WORKING_CONTEXT,
    RoundingMode,
    precision as currency_precision,
    smallest_unit,
)


class ModelValidationError(ValueError):
    """Raised when a model is constructed with an impossible shape."""


class PercentBase(str, Enum):
    """Subtotal a percentage-valued extra is computed against."""

    PRE_TAX_ITEM_SUBTOTALS = "preTaxItemSubtotals"
    TAXABLE_ITEM_SUBTOTALS_ONLY = "taxableItemSubtotalsOnly"
    POST_DISCOUNT_ITEM_SUBTOTALS = "postDiscountItemSubtotals"
    POST_TAX_SUBTOTALS = "postTaxSubtotals"
    POST_FEES_SUBTOTALS = "postFeesSubtotals"


class AbsoluteSplitMode(str, Enum):
    """How a fixed-amount fee or discount is spread over participants."""

    EVEN_ACROSS_PARTICIPANTS = "evenAcrossParticipants"
    PROPORTIONAL_TO_ITEM_SUBTOTALS = "proportionalToItemSubtotals"


class ExtraKind(str, Enum):
    PERCENT = "percent"
    AMOUNT = "amount"


class RemainderDistribution(str, Enum):
    """Who absorbs the leftover minor units after rounding."""

    LARGEST_SHARE = "largestShare"
    PAYER = "payer"
    FIRST_LISTED = "firstListed"
    RANDOM = "random"


def _require_id(value: object, label: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ModelValidationError(f"{label} must be a non-empty string")


def _require_decimal(value: object, label: str) -> None:
    if not isinstance(value, Decimal):
        raise ModelValidationError(f"{label} must be a Decimal")


# --------------------------------------------------------------------------
# Item assignment
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class EvenAssignment:
    """
    Item split equally among participant_ids.

    An empty tuple is representable so that validation can report it as a
    per-item issue instead of failing construction.
    """
    participant_ids: Tuple[str, ...]

    mode: ClassVar[str] = "even"

    def __post_init__(self) -> None:
        ids = tuple(self.participant_ids)
        for pid in ids:
            _require_id(pid, "EvenAssignment participant id")
        if len(set(ids)) != len(ids):
            raise ModelValidationError("EvenAssignment participant ids must be unique")
        object.__setattr__(self, "participant_ids", ids)

    @property
    def assignees(self) -> Tuple[str, ...]:
        return self.participant_ids

    def split(self, total: Decimal) -> Dict[str, Decimal]:
        if not self.participant_ids:
            return {}
        with localcontext(WORKING_CONTEXT):
            each = total / len(self.participant_ids)
        return {pid: each for pid in self.participant_ids}

    def share_of(self, participant_id: str) -> Decimal:
        with localcontext(WORKING_CONTEXT):
            return Decimal(1) / len(self.participant_ids)


@dataclass(frozen=True)
class CustomAssignment:
    """
    Item split by explicit fractional shares, e.g. {"alice": 0.6667, "bob": 0.3333}.

    Shares are normalised by their sum before use, so any input that passes
    the +/-0.01 tolerance check allocates the item total exactly.
    """
    shares: Mapping[str, Decimal]

    mode: ClassVar[str] = "custom"

    def __post_init__(self) -> None:
        if not isinstance(self.shares, Mapping):
            raise ModelValidationError("CustomAssignment.shares must be a mapping")
        copied: Dict[str, Decimal] = {}
        for pid, share in self.shares.items():
            _require_id(pid, "CustomAssignment participant id")
            _require_decimal(share, f"share for {pid}")
            copied[pid] = share
        object.__setattr__(self, "shares", copied)

    @property
    def assignees(self) -> Tuple[str, ...]:
        return tuple(self.shares)

    @property
    def share_sum(self) -> Decimal:
        return sum(self.shares.values(), Decimal(0))

    def normalized_shares(self) -> Dict[str, Decimal]:
        total = self.share_sum
        if total == 0:
            return {pid: Decimal(0) for pid in self.shares}
        with localcontext(WORKING_CONTEXT):
            return {pid: share / total for pid, share in self.shares.items()}

    def split(self, total: Decimal) -> Dict[str, Decimal]:
        with localcontext(WORKING_CONTEXT):
            return {pid: total * share for pid, share in self.normalized_shares().items()}

    def share_of(self, participant_id: str) -> Decimal:
        return self.normalized_shares()[participant_id]


ItemAssignment = Union[EvenAssignment, CustomAssignment]


@dataclass(frozen=True)
class LineItem:
    """
    One receipt line. item_total = quantity * unit_price.
    """
    id: str
    name: str
    quantity: Decimal
    unit_price: Decimal
    assignment: ItemAssignment
    taxable: bool = True
    service_chargeable: bool = False

    def __post_init__(self) -> None:
        _require_id(self.id, "LineItem.id")
        if not isinstance(self.name, str):
            raise ModelValidationError("LineItem.name must be a string")
        _require_decimal(self.quantity, "LineItem.quantity")
        _require_decimal(self.unit_price, "LineItem.unit_price")
        if not isinstance(self.assignment, (EvenAssignment, CustomAssignment)):
            raise ModelValidationError("LineItem.assignment must be an EvenAssignment or CustomAssignment")
        if not isinstance(self.taxable, bool) or not isinstance(self.service_chargeable, bool):
            raise ModelValidationError("LineItem flags must be booleans")

    @property
    def item_total(self) -> Decimal:
        with localcontext(WORKING_CONTEXT):
            return self.quantity * self.unit_price


# --------------------------------------------------------------------------
# Extras
# --------------------------------------------------------------------------


def _check_extra_shape(
    label: str,
    kind: object,
    value: object,
    base: object,
    split_mode: object = None,
    *,
    takes_split_mode: bool = False,
) -> None:
    if not isinstance(kind, ExtraKind):
        raise ModelValidationError(f"{label}.kind must be an ExtraKind")
    _require_decimal(value, f"{label}.value")

    if kind is ExtraKind.PERCENT:
        if not isinstance(base, PercentBase):
            raise ModelValidationError(f"percent-based {label.lower()} requires a PercentBase")
        if split_mode is not None:
            raise ModelValidationError(f"percent-based {label.lower()} cannot have a split mode")
        return

    if base is not None:
        raise ModelValidationError(f"amount-based {label.lower()} cannot have a base")
    if takes_split_mode and not isinstance(split_mode, AbsoluteSplitMode):
        raise ModelValidationError(f"amount-based {label.lower()} requires an AbsoluteSplitMode")
    if not takes_split_mode and split_mode is not None:
        raise ModelValidationError(f"{label.lower()} does not take a split mode")


@dataclass(frozen=True)
class TaxExtra:
    kind: ExtraKind
    value: Decimal
    base: Optional[PercentBase] = None

    label: ClassVar[str] = "Tax"
    default_base: ClassVar[PercentBase] = PercentBase.PRE_TAX_ITEM_SUBTOTALS

    def __post_init__(self) -> None:
        _check_extra_shape(self.label, self.kind, self.value, self.base)

    @classmethod
    def percent(cls, value: Decimal, base: Optional[PercentBase] = None):
        return cls(kind=ExtraKind.PERCENT, value=value, base=base or cls.default_base)

    @classmethod
    def amount(cls, value: Decimal):
        return cls(kind=ExtraKind.AMOUNT, value=value)

    @property
    def is_percent(self) -> bool:
        return self.kind is ExtraKind.PERCENT


@dataclass(frozen=True)
class TipExtra(TaxExtra):
    label: ClassVar[str] = "Tip"
    default_base: ClassVar[PercentBase] = PercentBase.POST_TAX_SUBTOTALS


@dataclass(frozen=True)
class FeeExtra:
    id: str
    name: str
    kind: ExtraKind
    value: Decimal
    base: Optional[PercentBase] = None
    split_mode: Optional[AbsoluteSplitMode] = None

    label: ClassVar[str] = "Fee"

    def __post_init__(self) -> None:
        _require_id(self.id, f"{self.label}.id")
        if not isinstance(self.name, str):
            raise ModelValidationError(f"{self.label}.name must be a string")
        _check_extra_shape(
            self.label, self.kind, self.value, self.base, self.split_mode, takes_split_mode=True
        )

    @classmethod
    def percent(cls, id: str, name: str, value: Decimal,
                base: PercentBase = PercentBase.PRE_TAX_ITEM_SUBTOTALS, **kwargs):
        return cls(id=id, name=name, kind=ExtraKind.PERCENT, value=value, base=base, **kwargs)

    @classmethod
    def amount(cls, id: str, name: str, value: Decimal,
               split_mode: AbsoluteSplitMode = AbsoluteSplitMode.PROPORTIONAL_TO_ITEM_SUBTOTALS, **kwargs):
        return cls(id=id, name=name, kind=ExtraKind.AMOUNT, value=value, split_mode=split_mode, **kwargs)

    @property
    def is_percent(self) -> bool:
        return self.kind is ExtraKind.PERCENT


@dataclass(frozen=True)
class DiscountExtra(FeeExtra):
    """
    A reduction. apply_before_tax decides whether it shrinks the tax base.
    """
    apply_before_tax: bool = True

    label: ClassVar[str] = "Discount"

    def __post_init__(self) -> None:
        super().__post_init__()
        if not isinstance(self.apply_before_tax, bool):
            raise ModelValidationError("Discount.apply_before_tax must be a boolean")


@dataclass(frozen=True)
class Extras:
    tax: Optional[TaxExtra] = None
    tip: Optional[TipExtra] = None
    fees: Tuple[FeeExtra, ...] = ()
    discounts: Tuple[DiscountExtra, ...] = ()

    def __post_init__(self) -> None:
        # TipExtra and DiscountExtra subclass TaxExtra and FeeExtra; check exact types.
        if self.tax is not None and type(self.tax) is not TaxExtra:
            raise ModelValidationError("Extras.tax must be a TaxExtra")
        if self.tip is not None and type(self.tip) is not TipExtra:
            raise ModelValidationError("Extras.tip must be a TipExtra")
        fees = tuple(self.fees)
        discounts = tuple(self.discounts)
        if any(type(f) is not FeeExtra for f in fees):
            raise ModelValidationError("Extras.fees must contain FeeExtra values")
        if any(not isinstance(d, DiscountExtra) for d in discounts):
            raise ModelValidationError("Extras.discounts must contain DiscountExtra values")
        object.__setattr__(self, "fees", fees)
        object.__setattr__(self, "discounts", discounts)

    @property
    def pre_tax_discounts(self) -> Tuple[DiscountExtra, ...]:
        return tuple(d for d in self.discounts if d.apply_before_tax)

    @property
    def post_tax_discounts(self) -> Tuple[DiscountExtra, ...]:
        return tuple(d for d in self.discounts if not d.apply_before_tax)


# --------------------------------------------------------------------------
# Allocation rule
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class RoundingConfig:
    precision: int
    mode: RoundingMode = RoundingMode.ROUND_HALF_UP
    remainder_distribution: RemainderDistribution = RemainderDistribution.LARGEST_SHARE

    def __post_init__(self) -> None:
        if isinstance(self.precision, bool) or not isinstance(self.precision, int) or not 0 <= self.precision <= 4:
            raise ModelValidationError("RoundingConfig.precision must be an int between 0 and 4")
        if not isinstance(self.mode, RoundingMode):
            raise ModelValidationError("RoundingConfig.mode must be a RoundingMode")
        if not isinstance(self.remainder_distribution, RemainderDistribution):
            raise ModelValidationError("RoundingConfig.remainder_distribution must be a RemainderDistribution")

    @classmethod
    def for_currency(cls, currency_code: str, **kwargs) -> "RoundingConfig":
        return cls(precision=currency_precision(currency_code), **kwargs)

    @property
    def smallest_unit(self) -> Decimal:
        return smallest_unit(self.precision)


@dataclass(frozen=True)
class AllocationRule:
    rounding: RoundingConfig

    def __post_init__(self) -> None:
        if not isinstance(self.rounding, RoundingConfig):
            raise ModelValidationError("AllocationRule.rounding must be a RoundingConfig")

    @classmethod
    def for_currency(cls, currency_code: str, **kwargs) -> "AllocationRule":
        return cls(rounding=RoundingConfig.for_currency(currency_code, **kwargs))


# --------------------------------------------------------------------------
# Breakdown (engine output)
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class ItemContribution:
    """
    One line of a participant's audit trail: how much of an item they took.
    """
    item_id: str
    name: str
    amount: Decimal
    quantity: Decimal
    unit_price: Decimal
    share: Decimal


@dataclass(frozen=True)
class ParticipantBreakdown:
    """
    Per-participant result.

    discounts_allocated is <= 0. After rounding,
      item_subtotal + tax_allocated + tip_allocated + fees_allocated
      + discounts_allocated + rounding_adjustment == total
    holds exactly.

    rounding_adjustment is not the rounding remainder. It is whatever keeps
    the independently rounded components equal to the rounded total, so it
    also carries per-component drift for every participant. The signed
    remainder given to the chosen recipient is kept in remainder_applied.
    """
    participant_id: str
    item_subtotal: Decimal = Decimal(0)
    tax_allocated: Decimal = Decimal(0)
    tip_allocated: Decimal = Decimal(0)
    fees_allocated: Decimal = Decimal(0)
    discounts_allocated: Decimal = Decimal(0)
    rounding_adjustment: Decimal = Decimal(0)
    total: Decimal = Decimal(0)
    items: Tuple[ItemContribution, ...] = ()
    fees_by_name: Dict[str, Decimal] = field(default_factory=dict)
    discounts_by_name: Dict[str, Decimal] = field(default_factory=dict)
    remainder_applied: Decimal = Decimal(0)

    def __post_init__(self) -> None:
        _require_id(self.participant_id, "ParticipantBreakdown.participant_id")
        object.__setattr__(self, "items", tuple(self.items))

    @property
    def components_sum(self) -> Decimal:
        with localcontext(WORKING_CONTEXT):
            return (
                self.item_subtotal
                + self.tax_allocated
                + self.tip_allocated
                + self.fees_allocated
                + self.discounts_allocated
                + self.rounding_adjustment
            )
