# backend/tabsplit/api/validators.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Mapping, Optional, Tuple

from tabsplit.domain.ledger import Expense, Transfer
from tabsplit.domain.models import AllocationRule, Extras, LineItem, ModelValidationError
from tabsplit.domain.money import MoneyError, is_whole_units, precision, to_decimal
from tabsplit.domain.serialization import (
    RecordFormatError,
    allocation_from_record,
    expense_from_record,
    extras_from_record,
    item_from_record,
    transfer_from_record,
)
from tabsplit.domain.validation import ValidationLimits

_DECODE_ERRORS = (RecordFormatError, ModelValidationError, MoneyError)


class ApiValidationError(ValueError):
    """Raised when request payload validation fails."""


@dataclass(frozen=True)
class ItemizedRequest:
    payer_id: str
    participant_ids: List[str]
    currency: str
    items: List[LineItem]
    extras: Extras
    allocation: AllocationRule
    expense_id: Optional[str] = None
    description: str = ""
    confirm_warnings: bool = False


def require_object(data: object) -> Mapping[str, Any]:
    if data is None:
        raise ApiValidationError("Request body must be JSON.")
    if not isinstance(data, dict):
        raise ApiValidationError("Request body must be a JSON object.")
    return data


def parse_currency(raw: object, default: str) -> str:
    if raw is None:
        return default
    if not isinstance(raw, str) or len(raw.strip()) != 3 or not raw.strip().isalpha():
        raise ApiValidationError("'currency' must be a three-letter currency code.")
    return raw.strip().upper()


def parse_bool(raw: object, name: str, default: bool = False) -> bool:
    if raw is None:
        return default
    if not isinstance(raw, bool):
        raise ApiValidationError(f"'{name}' must be a boolean.")
    return raw


def parse_optional_string(raw: object, name: str) -> Optional[str]:
    if raw is None:
        return None
    if not isinstance(raw, str) or not raw.strip():
        raise ApiValidationError(f"'{name}' must be a non-empty string.")
    return raw.strip()


def parse_unique_participant_ids(raw_participants: object) -> List[str]:
    if not isinstance(raw_participants, list) or not raw_participants:
        raise ApiValidationError(
            "'participant_ids' must be a non-empty list of participant ids."
        )

    participant_ids: List[str] = []
    seen_participant_ids: set[str] = set()
    for pid in raw_participants:
        if not isinstance(pid, str) or not pid.strip():
            raise ApiValidationError("Each participant id must be a non-empty string.")
        if pid in seen_participant_ids:
            raise ApiValidationError("Participant ids must be unique.")
        seen_participant_ids.add(pid)
        participant_ids.append(pid)

    return participant_ids


def parse_itemized_request(data: Mapping[str, Any], default_currency: str) -> ItemizedRequest:
    """
    Decode an itemized draft.

    Shape problems (wrong JSON types, unknown enum values) raise
    ApiValidationError. Value problems a user can fix, such as an unassigned
    item or shares that do not add up, are left to the allocation validator
    so they come back as per-field issues.
    """
    payer_id = parse_optional_string(data.get("payer_id"), "payer_id")
    if payer_id is None:
        raise ApiValidationError("Missing field: payer_id")
    participant_ids = parse_unique_participant_ids(data.get("participant_ids"))
    currency = parse_currency(data.get("currency"), default_currency)

    raw_items = data.get("items")
    if not isinstance(raw_items, list):
        raise ApiValidationError("'items' must be a list.")

    try:
        items = [item_from_record(raw, f"items[{idx}]") for idx, raw in enumerate(raw_items)]
        extras = extras_from_record(data.get("extras"))
        allocation = allocation_from_record(data.get("allocation"), currency)
    except _DECODE_ERRORS as e:
        raise ApiValidationError(str(e)) from e

    description = data.get("description") or ""
    if not isinstance(description, str):
        raise ApiValidationError("'description' must be a string.")

    return ItemizedRequest(
        payer_id=payer_id,
        participant_ids=participant_ids,
        currency=currency,
        items=items,
        extras=extras,
        allocation=allocation,
        expense_id=parse_optional_string(data.get("id"), "id"),
        description=description.strip(),
        confirm_warnings=parse_bool(data.get("confirm_warnings"), "confirm_warnings"),
    )


def parse_expense(raw: object, path: str = "expense") -> Expense:
    try:
        return expense_from_record(raw, path)
    except _DECODE_ERRORS as e:
        raise ApiValidationError(str(e)) from e


def parse_expenses(raw_expenses: object) -> List[Expense]:
    if not isinstance(raw_expenses, list):
        raise ApiValidationError("'expenses' must be a list.")
    return [parse_expense(raw, f"expenses[{idx}]") for idx, raw in enumerate(raw_expenses)]


def parse_transfer(raw: object, currency: Optional[str] = None, path: str = "transfer") -> Transfer:
    """
    A transfer someone reports as paid. Must move a positive amount between
    two different people, at the currency's precision when one is given.
    """
    try:
        transfer = transfer_from_record(raw, path)
    except _DECODE_ERRORS as e:
        raise ApiValidationError(str(e)) from e

    if transfer.from_id == transfer.to_id:
        raise ApiValidationError("A transfer needs two different participants.")
    if transfer.amount <= 0:
        raise ApiValidationError("Transfer 'amount' must be greater than 0.")
    if currency is not None and not is_whole_units(transfer.amount, precision(currency)):
        raise ApiValidationError(f"Transfer 'amount' has more decimal places than {currency} allows.")
    return transfer


def parse_transfers(raw_transfers: object) -> List[Transfer]:
    if raw_transfers is None:
        return []
    if not isinstance(raw_transfers, list):
        raise ApiValidationError("'settled_transfers' must be a list.")
    return [parse_transfer(raw, path=f"settled_transfers[{idx}]") for idx, raw in enumerate(raw_transfers)]


def limits_from_config(config: Mapping[str, Any]) -> ValidationLimits:
    def _percent(key: str, default: str) -> Decimal:
        return to_decimal(str(config.get(key) or default), field=key)

    return ValidationLimits(
        tax_warning_percent=_percent("TAX_WARNING_PERCENT", "25"),
        tip_warning_percent=_percent("TIP_WARNING_PERCENT", "35"),
    )


def split_settlement_payload(data: Mapping[str, Any]) -> Tuple[List[Expense], List[Transfer]]:
    return parse_expenses(data.get("expenses")), parse_transfers(data.get("settled_transfers"))
