# backend/tabsplit/domain/validation.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from tabsplit.domain.models import (
    CustomAssignment,
    DiscountExtra,
    Extras,
    FeeExtra,
    LineItem,
    PercentBase,
    TaxExtra,
)

SHARE_SUM_TOLERANCE = Decimal("0.01")
MAX_PERCENT = Decimal(100)

_AFTER_TAX_BASES = (PercentBase.POST_TAX_SUBTOTALS, PercentBase.POST_FEES_SUBTOTALS)


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationIssue:
    """
    A caller-fixable problem with the inputs, addressed to one field.

    field uses a path such as "items[2].assignment" or "extras.tip".
    """
    field: str
    code: str
    message: str
    severity: Severity = Severity.ERROR

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "code": self.code,
            "message": self.message,
            "severity": self.severity.value,
        }


@dataclass(frozen=True)
class ValidationLimits:
    """
    Sanity thresholds above which a percentage needs explicit confirmation.
    """
    tax_warning_percent: Decimal = Decimal(25)
    tip_warning_percent: Decimal = Decimal(35)


def _error(field: str, code: str, message: str) -> ValidationIssue:
    return ValidationIssue(field=field, code=code, message=message)


def _warning(field: str, code: str, message: str) -> ValidationIssue:
    return ValidationIssue(field=field, code=code, message=message, severity=Severity.WARNING)


def validate_participants(payer_id: object, participant_ids: Sequence[str]) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    if not isinstance(payer_id, str) or not payer_id.strip():
        issues.append(_error("payer_id", "required", "Payer id must be a non-empty string."))

    if not participant_ids:
        issues.append(_error("participant_ids", "required", "At least one participant is required."))
        return issues

    seen: set[str] = set()
    for idx, pid in enumerate(participant_ids):
        if not isinstance(pid, str) or not pid.strip():
            issues.append(_error(f"participant_ids[{idx}]", "invalid", "Participant id must be a non-empty string."))
        elif pid in seen:
            issues.append(_error(f"participant_ids[{idx}]", "duplicate", f"Participant {pid} is listed twice."))
        seen.add(pid)
    return issues


def validate_item(idx: int, item: LineItem, participant_ids: Sequence[str]) -> List[ValidationIssue]:
    path = f"items[{idx}]"
    issues: List[ValidationIssue] = []

    if not item.name.strip():
        issues.append(_error(f"{path}.name", "required", "Item name cannot be empty."))
    if item.quantity <= 0:
        issues.append(_error(f"{path}.quantity", "not_positive", "Quantity must be greater than 0."))
    if item.unit_price < 0:
        issues.append(_error(f"{path}.unit_price", "negative", "Unit price cannot be negative."))

    assignment = item.assignment
    if not assignment.assignees:
        issues.append(_error(f"{path}.assignment", "unassigned", f"Item '{item.name}' has no one assigned."))
        return issues

    known = set(participant_ids)
    for pid in assignment.assignees:
        if pid not in known:
            issues.append(
                _error(f"{path}.assignment", "unknown_participant", f"Item '{item.name}' is assigned to unknown participant {pid}.")
            )

    if isinstance(assignment, CustomAssignment):
        for pid, share in assignment.shares.items():
            if share <= 0 or share > 1:
                issues.append(
                    _error(f"{path}.assignment.shares.{pid}", "share_out_of_range", "Each share must be greater than 0 and at most 1.")
                )
        share_sum = assignment.share_sum
        if abs(share_sum - 1) > SHARE_SUM_TOLERANCE:
            issues.append(
                _error(f"{path}.assignment", "share_sum", f"Shares must sum to 1.0 (current sum: {share_sum}).")
            )
    return issues


def _validate_value(path: str, extra, label: str) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    if extra.value < 0:
        issues.append(_error(f"{path}.value", "negative", f"{label} value cannot be negative."))
    elif extra.is_percent and extra.value > MAX_PERCENT:
        issues.append(_error(f"{path}.value", "percent_out_of_range", f"{label} percentage cannot exceed 100."))
    return issues


def _validate_named(path: str, extra: FeeExtra, label: str, seen_ids: set[str]) -> List[ValidationIssue]:
    issues = _validate_value(path, extra, label)
    if not extra.name.strip():
        issues.append(_error(f"{path}.name", "required", f"{label} name cannot be empty."))
    if extra.id in seen_ids:
        issues.append(_error(f"{path}.id", "duplicate", f"{label} id {extra.id} is used twice."))
    seen_ids.add(extra.id)
    return issues


def _check_threshold(path: str, extra: Optional[TaxExtra], limit: Decimal, label: str) -> List[ValidationIssue]:
    if extra is None or not extra.is_percent or extra.value > MAX_PERCENT:
        return []
    if extra.value > limit:
        return [
            _warning(
                f"{path}.value",
                "unusually_high",
                f"{label} of {extra.value}% is above {limit}%. Confirm to continue.",
            )
        ]
    return []


def validate_extras(extras: Extras, limits: ValidationLimits) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []

    if extras.tax is not None:
        issues += _validate_value("extras.tax", extras.tax, "Tax")
        if extras.tax.is_percent and extras.tax.base in _AFTER_TAX_BASES:
            issues.append(_error("extras.tax.base", "base_order", "Tax cannot be computed on a post-tax or post-fees base."))
        issues += _check_threshold("extras.tax", extras.tax, limits.tax_warning_percent, "Tax")

    if extras.tip is not None:
        issues += _validate_value("extras.tip", extras.tip, "Tip")
        issues += _check_threshold("extras.tip", extras.tip, limits.tip_warning_percent, "Tip")

    fee_ids: set[str] = set()
    for idx, fee in enumerate(extras.fees):
        issues += _validate_named(f"extras.fees[{idx}]", fee, "Fee", fee_ids)

    discount_ids: set[str] = set()
    for idx, discount in enumerate(extras.discounts):
        path = f"extras.discounts[{idx}]"
        issues += _validate_named(path, discount, "Discount", discount_ids)
        issues += _validate_discount_base(path, discount)

    return issues


def _validate_discount_base(path: str, discount: DiscountExtra) -> List[ValidationIssue]:
    if not discount.is_percent:
        return []
    if discount.apply_before_tax and discount.base in _AFTER_TAX_BASES:
        return [_error(f"{path}.base", "base_order", "A pre-tax discount cannot use a post-tax or post-fees base.")]
    if not discount.apply_before_tax and discount.base is PercentBase.POST_FEES_SUBTOTALS:
        return [_error(f"{path}.base", "base_order", "Discounts are applied before fees and cannot use a post-fees base.")]
    return []


def validate_allocation_inputs(
    items: Sequence[LineItem],
    extras: Extras,
    payer_id: str,
    participant_ids: Sequence[str],
    limits: ValidationLimits = ValidationLimits(),
) -> Tuple[List[ValidationIssue], List[ValidationIssue]]:
    """
    Check everything a user can fix before the engine runs.

    Returns (errors, warnings). Warnings never stop a calculation on their
    own; the caller decides whether they need confirmation.
    """
    issues = validate_participants(payer_id, participant_ids)

    if not items:
        issues.append(_error("items", "required", "At least one item is required."))

    # The payer may take items without being listed separately.
    known = list(participant_ids) + [payer_id]
    seen_items: set[str] = set()
    for idx, item in enumerate(items):
        if item.id in seen_items:
            issues.append(_error(f"items[{idx}].id", "duplicate", f"Item id {item.id} is used twice."))
        seen_items.add(item.id)
        issues += validate_item(idx, item, known)

    issues += validate_extras(extras, limits)

    errors = [i for i in issues if i.severity is Severity.ERROR]
    warnings = [i for i in issues if i.severity is Severity.WARNING]
    return errors, warnings
