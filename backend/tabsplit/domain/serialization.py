# backend/tabsplit/domain/serialization.py
"""
Persisted record shape for expenses and transfers.

Records are JSON-compatible dicts. Money, quantities and shares are stored as
decimal strings so nothing passes through binary floats. Legacy and itemized
expenses share one collection and are told apart by "split_type".
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from tabsplit.domain.ledger import (
    Expense,
    ItemizedExpense,
    LegacyExpense,
    SettlementResult,
    SplitType,
    Transfer,
)
from tabsplit.domain.models import (
    AbsoluteSplitMode,
    AllocationRule,
    CustomAssignment,
    DiscountExtra,
    EvenAssignment,
    ExtraKind,
    Extras,
    FeeExtra,
    ItemAssignment,
    ItemContribution,
    LineItem,
    ModelValidationError,
    ParticipantBreakdown,
    PercentBase,
    RemainderDistribution,
    RoundingConfig,
    TaxExtra,
    TipExtra,
)
from tabsplit.domain.money import MoneyError, RoundingMode, to_decimal


class RecordFormatError(ValueError):
    """Raised when a stored or posted record cannot be decoded."""


def _dec(value: Decimal) -> str:
    return str(value)


def _mapping(record: Any, path: str) -> Mapping[str, Any]:
    if not isinstance(record, Mapping):
        raise RecordFormatError(f"{path} must be an object")
    return record


def _require(record: Mapping[str, Any], key: str, path: str) -> Any:
    if not isinstance(record, Mapping):
        raise RecordFormatError(f"{path} must be an object")
    if key not in record:
        raise RecordFormatError(f"{path}.{key} is required")
    return record[key]


def _decimal(record: Mapping[str, Any], key: str, path: str, default: Optional[str] = None) -> Decimal:
    raw = record.get(key, default) if default is not None else _require(record, key, path)
    try:
        return to_decimal(raw, field=f"{path}.{key}")
    except MoneyError as e:
        raise RecordFormatError(str(e)) from e


def _enum(enum_cls, raw: Any, path: str):
    try:
        return enum_cls(raw)
    except ValueError as e:
        allowed = ", ".join(m.value for m in enum_cls)
        raise RecordFormatError(f"{path} must be one of: {allowed}") from e


def _bool(record: Mapping[str, Any], key: str, path: str, default: bool) -> bool:
    raw = record.get(key, default)
    if not isinstance(raw, bool):
        raise RecordFormatError(f"{path}.{key} must be a boolean")
    return raw


def _str(record: Mapping[str, Any], key: str, path: str, default: Optional[str] = None) -> str:
    raw = record.get(key, default) if default is not None else _require(record, key, path)
    if not isinstance(raw, str):
        raise RecordFormatError(f"{path}.{key} must be a string")
    return raw


def _decimal_map(raw: Any, path: str) -> Dict[str, Decimal]:
    if not isinstance(raw, Mapping):
        raise RecordFormatError(f"{path} must be an object")
    out: Dict[str, Decimal] = {}
    for key, value in raw.items():
        try:
            out[str(key)] = to_decimal(value, field=f"{path}.{key}")
        except MoneyError as e:
            raise RecordFormatError(str(e)) from e
    return out


def _list(raw: Any, path: str) -> List[Any]:
    if not isinstance(raw, list):
        raise RecordFormatError(f"{path} must be a list")
    return raw


# --------------------------------------------------------------------------
# Items
# --------------------------------------------------------------------------


def assignment_to_record(assignment: ItemAssignment) -> Dict[str, Any]:
    if isinstance(assignment, EvenAssignment):
        return {"mode": "even", "participant_ids": list(assignment.participant_ids)}
    return {"mode": "custom", "shares": {pid: _dec(s) for pid, s in assignment.shares.items()}}


def assignment_from_record(record: Mapping[str, Any], path: str = "assignment") -> ItemAssignment:
    mode = _str(record, "mode", path)
    if mode == "even":
        ids = _list(_require(record, "participant_ids", path), f"{path}.participant_ids")
        return EvenAssignment(participant_ids=tuple(ids))
    if mode == "custom":
        return CustomAssignment(shares=_decimal_map(_require(record, "shares", path), f"{path}.shares"))
    raise RecordFormatError(f"{path}.mode must be 'even' or 'custom'")


def item_to_record(item: LineItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "name": item.name,
        "quantity": _dec(item.quantity),
        "unit_price": _dec(item.unit_price),
        "taxable": item.taxable,
        "service_chargeable": item.service_chargeable,
        "assignment": assignment_to_record(item.assignment),
    }


def item_from_record(record: Mapping[str, Any], path: str = "item") -> LineItem:
    return LineItem(
        id=_str(record, "id", path),
        name=_str(record, "name", path),
        quantity=_decimal(record, "quantity", path, default="1"),
        unit_price=_decimal(record, "unit_price", path),
        taxable=_bool(record, "taxable", path, True),
        service_chargeable=_bool(record, "service_chargeable", path, False),
        assignment=assignment_from_record(_require(record, "assignment", path), f"{path}.assignment"),
    )


# --------------------------------------------------------------------------
# Extras
# --------------------------------------------------------------------------


def _extra_to_record(extra) -> Dict[str, Any]:
    record: Dict[str, Any] = {"kind": extra.kind.value, "value": _dec(extra.value)}
    if extra.base is not None:
        record["base"] = extra.base.value
    return record


def _named_extra_to_record(extra: FeeExtra) -> Dict[str, Any]:
    record = {"id": extra.id, "name": extra.name, **_extra_to_record(extra)}
    if extra.split_mode is not None:
        record["split_mode"] = extra.split_mode.value
    if isinstance(extra, DiscountExtra):
        record["apply_before_tax"] = extra.apply_before_tax
    return record


def _charge_from_record(cls, record: Mapping[str, Any], path: str):
    kind = _enum(ExtraKind, _require(record, "kind", path), f"{path}.kind")
    value = _decimal(record, "value", path)
    if kind is ExtraKind.PERCENT:
        base = record.get("base")
        return cls.percent(value, _enum(PercentBase, base, f"{path}.base") if base is not None else None)
    return cls.amount(value)


def _named_from_record(cls, record: Mapping[str, Any], path: str, **kwargs):
    kind = _enum(ExtraKind, _require(record, "kind", path), f"{path}.kind")
    common = dict(
        id=_str(record, "id", path),
        name=_str(record, "name", path),
        value=_decimal(record, "value", path),
        **kwargs,
    )
    if kind is ExtraKind.PERCENT:
        base = _enum(PercentBase, record.get("base", PercentBase.PRE_TAX_ITEM_SUBTOTALS.value), f"{path}.base")
        return cls.percent(base=base, **common)
    split_mode = _enum(
        AbsoluteSplitMode,
        record.get("split_mode", AbsoluteSplitMode.PROPORTIONAL_TO_ITEM_SUBTOTALS.value),
        f"{path}.split_mode",
    )
    return cls.amount(split_mode=split_mode, **common)


def extras_to_record(extras: Extras) -> Dict[str, Any]:
    return {
        "tax": _extra_to_record(extras.tax) if extras.tax is not None else None,
        "tip": _extra_to_record(extras.tip) if extras.tip is not None else None,
        "fees": [_named_extra_to_record(f) for f in extras.fees],
        "discounts": [_named_extra_to_record(d) for d in extras.discounts],
    }


def extras_from_record(record: Optional[Mapping[str, Any]], path: str = "extras") -> Extras:
    if record is None:
        return Extras()
    if not isinstance(record, Mapping):
        raise RecordFormatError(f"{path} must be an object")
    tax = record.get("tax")
    tip = record.get("tip")
    fees = _list(record.get("fees", []), f"{path}.fees")
    discounts = _list(record.get("discounts", []), f"{path}.discounts")
    return Extras(
        tax=_charge_from_record(TaxExtra, tax, f"{path}.tax") if tax is not None else None,
        tip=_charge_from_record(TipExtra, tip, f"{path}.tip") if tip is not None else None,
        fees=tuple(_named_from_record(FeeExtra, f, f"{path}.fees[{i}]") for i, f in enumerate(fees)),
        discounts=tuple(
            _named_from_record(
                DiscountExtra,
                d,
                f"{path}.discounts[{i}]",
                apply_before_tax=_bool(
                    _mapping(d, f"{path}.discounts[{i}]"), "apply_before_tax", f"{path}.discounts[{i}]", True
                ),
            )
            for i, d in enumerate(discounts)
        ),
    )


# --------------------------------------------------------------------------
# Allocation rule and breakdown
# --------------------------------------------------------------------------


def allocation_to_record(rule: AllocationRule) -> Dict[str, Any]:
    return {
        "rounding": {
            "precision": rule.rounding.precision,
            "mode": rule.rounding.mode.value,
            "remainder_distribution": rule.rounding.remainder_distribution.value,
        }
    }


def allocation_from_record(
    record: Optional[Mapping[str, Any]],
    currency: str,
    path: str = "allocation",
) -> AllocationRule:
    """
    Missing fields fall back to the currency's precision, half-up rounding
    and largest-share remainder distribution.
    """
    rounding = _mapping(record if record is not None else {}, path).get("rounding") or {}
    if not isinstance(rounding, Mapping):
        raise RecordFormatError(f"{path}.rounding must be an object")
    kwargs: Dict[str, Any] = {}
    if "mode" in rounding:
        kwargs["mode"] = _enum(RoundingMode, rounding["mode"], f"{path}.rounding.mode")
    if "remainder_distribution" in rounding:
        kwargs["remainder_distribution"] = _enum(
            RemainderDistribution, rounding["remainder_distribution"], f"{path}.rounding.remainder_distribution"
        )
    if "precision" in rounding:
        return AllocationRule(rounding=RoundingConfig(precision=rounding["precision"], **kwargs))
    return AllocationRule.for_currency(currency, **kwargs)


def breakdown_to_record(b: ParticipantBreakdown) -> Dict[str, Any]:
    return {
        "participant_id": b.participant_id,
        "item_subtotal": _dec(b.item_subtotal),
        "tax_allocated": _dec(b.tax_allocated),
        "tip_allocated": _dec(b.tip_allocated),
        "fees_allocated": _dec(b.fees_allocated),
        "discounts_allocated": _dec(b.discounts_allocated),
        "rounding_adjustment": _dec(b.rounding_adjustment),
        "remainder_applied": _dec(b.remainder_applied),
        "total": _dec(b.total),
        "fees_by_name": {k: _dec(v) for k, v in b.fees_by_name.items()},
        "discounts_by_name": {k: _dec(v) for k, v in b.discounts_by_name.items()},
        "items": [
            {
                "item_id": c.item_id,
                "name": c.name,
                "amount": _dec(c.amount),
                "quantity": _dec(c.quantity),
                "unit_price": _dec(c.unit_price),
                "share": _dec(c.share),
            }
            for c in b.items
        ],
    }


def breakdown_from_record(record: Mapping[str, Any], path: str = "breakdown") -> ParticipantBreakdown:
    record = _mapping(record, path)
    items = _list(record.get("items", []), f"{path}.items")
    return ParticipantBreakdown(
        participant_id=_str(record, "participant_id", path),
        item_subtotal=_decimal(record, "item_subtotal", path),
        tax_allocated=_decimal(record, "tax_allocated", path, default="0"),
        tip_allocated=_decimal(record, "tip_allocated", path, default="0"),
        fees_allocated=_decimal(record, "fees_allocated", path, default="0"),
        discounts_allocated=_decimal(record, "discounts_allocated", path, default="0"),
        rounding_adjustment=_decimal(record, "rounding_adjustment", path, default="0"),
        remainder_applied=_decimal(record, "remainder_applied", path, default="0"),
        total=_decimal(record, "total", path),
        fees_by_name=_decimal_map(record.get("fees_by_name", {}), f"{path}.fees_by_name"),
        discounts_by_name=_decimal_map(record.get("discounts_by_name", {}), f"{path}.discounts_by_name"),
        items=tuple(
            ItemContribution(
                item_id=_str(c, "item_id", f"{path}.items[{i}]"),
                name=_str(c, "name", f"{path}.items[{i}]"),
                amount=_decimal(c, "amount", f"{path}.items[{i}]"),
                quantity=_decimal(c, "quantity", f"{path}.items[{i}]", default="1"),
                unit_price=_decimal(c, "unit_price", f"{path}.items[{i}]", default="0"),
                share=_decimal(c, "share", f"{path}.items[{i}]", default="1"),
            )
            for i, c in enumerate(items)
        ),
    )


# --------------------------------------------------------------------------
# Expenses and transfers
# --------------------------------------------------------------------------


def expense_to_record(expense: Expense) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "id": expense.id,
        "trip_id": expense.trip_id,
        "payer_id": expense.payer_id,
        "amount": _dec(expense.amount),
        "currency": expense.currency,
        "description": expense.description,
        "split_type": expense.split_type.value,
    }
    if isinstance(expense, LegacyExpense):
        record["participants"] = {pid: _dec(w) for pid, w in expense.weights.items()}
        return record

    record.update(
        {
            "items": [item_to_record(i) for i in expense.items],
            "extras": extras_to_record(expense.extras),
            "allocation": allocation_to_record(expense.allocation),
            "participant_amounts": {pid: _dec(a) for pid, a in expense.participant_amounts.items()},
            "participant_breakdown": {
                pid: breakdown_to_record(b) for pid, b in expense.participant_breakdown.items()
            },
        }
    )
    return record


def expense_from_record(record: Mapping[str, Any], path: str = "expense") -> Expense:
    """
    Decode either record shape into the matching Expense variant.

    Raises RecordFormatError for malformed records.
    """
    record = _mapping(record, path)
    try:
        split_type = _enum(SplitType, record.get("split_type", SplitType.EQUAL.value), f"{path}.split_type")
        currency = _str(record, "currency", path, default="USD")
        common = dict(
            id=_str(record, "id", path),
            payer_id=_str(record, "payer_id", path),
            amount=_decimal(record, "amount", path),
            currency=currency,
            description=record.get("description") or "",
            trip_id=record.get("trip_id"),
        )
        if split_type is not SplitType.ITEMIZED:
            weights = _decimal_map(_require(record, "participants", path), f"{path}.participants")
            return LegacyExpense(weights=weights, split_type=split_type, **common)

        items = _list(_require(record, "items", path), f"{path}.items")
        breakdown = record.get("participant_breakdown") or {}
        if not isinstance(breakdown, Mapping):
            raise RecordFormatError(f"{path}.participant_breakdown must be an object")
        return ItemizedExpense(
            items=tuple(item_from_record(it, f"{path}.items[{i}]") for i, it in enumerate(items)),
            extras=extras_from_record(record.get("extras"), f"{path}.extras"),
            allocation=allocation_from_record(record.get("allocation"), currency, f"{path}.allocation"),
            participant_amounts=_decimal_map(
                _require(record, "participant_amounts", path), f"{path}.participant_amounts"
            ),
            participant_breakdown={
                str(pid): breakdown_from_record(b, f"{path}.participant_breakdown.{pid}")
                for pid, b in breakdown.items()
            },
            **common,
        )
    except ModelValidationError as e:
        raise RecordFormatError(str(e)) from e


def transfer_to_record(transfer: Transfer) -> Dict[str, Any]:
    return {"from_id": transfer.from_id, "to_id": transfer.to_id, "amount": _dec(transfer.amount)}


def transfer_from_record(record: Mapping[str, Any], path: str = "transfer") -> Transfer:
    try:
        return Transfer(
            from_id=_str(record, "from_id", path),
            to_id=_str(record, "to_id", path),
            amount=_decimal(record, "amount", path),
        )
    except ModelValidationError as e:
        raise RecordFormatError(str(e)) from e


def settlement_to_record(result: SettlementResult) -> Dict[str, Any]:
    return {
        "currency": result.currency,
        "net_balances": {pid: _dec(b) for pid, b in result.net_balances.items()},
        "active_transfers": [transfer_to_record(t) for t in result.active_transfers],
        "settled_transfers": [transfer_to_record(t) for t in result.settled_transfers],
        "person_summaries": {
            pid: {
                "total_paid": _dec(s.total_paid),
                "total_owed": _dec(s.total_owed),
                "net": _dec(s.net),
            }
            for pid, s in result.person_summaries.items()
        },
    }
