# backend/tabsplit/api/routes.py
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import uuid4

from flask import Blueprint, current_app, jsonify, request

from tabsplit.api.validators import (
    ApiValidationError,
    limits_from_config,
    parse_currency,
    parse_expense,
    parse_itemized_request,
    parse_transfer,
    require_object,
    split_settlement_payload,
)
from tabsplit.db.repository import SplitRepository
from tabsplit.domain.money import MoneyError, precision, smallest_unit, supported_currencies
from tabsplit.domain.rounding import DataIntegrityError
from tabsplit.domain.serialization import (
    RecordFormatError,
    breakdown_to_record,
    expense_to_record,
    settlement_to_record,
)
from tabsplit.domain.settlement import SettlementInputError, compute_settlement, transfer_breakdown
from tabsplit.domain.validation import ValidationIssue
from tabsplit.services.itemized_service import (
    AllocationOutcome,
    AllocationRejected,
    build_itemized_expense,
    calculate_itemized_allocation,
    currency_mismatch,
)

logger = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__, url_prefix="/api")


def _json_error(
    message: str,
    *,
    status: int = 400,
    code: str = "bad_request",
    issues: Optional[List[ValidationIssue]] = None,
):
    body: Dict[str, Any] = {"code": code, "message": message}
    if issues is not None:
        body["issues"] = [i.to_dict() for i in issues]
    return jsonify({"error": body}), status


def _repo() -> SplitRepository:
    return SplitRepository(current_app.config.get("DATABASE_URL", ""))


def _default_currency() -> str:
    return current_app.config.get("DEFAULT_CURRENCY", "USD")


def _db_unavailable():
    return _json_error("Database is not configured.", status=503, code="db_unavailable")


def _data_integrity_error(e: DataIntegrityError):
    logger.error("data integrity check failed: %s", e)
    return _json_error(
        "Amounts did not reconcile; nothing was saved.", status=500, code="data_integrity"
    )


def _outcome_error(outcome: AllocationOutcome):
    if outcome.needs_confirmation:
        return _json_error(
            "Some values look unusual. Resend with confirm_warnings=true to continue.",
            status=409,
            code="confirmation_required",
            issues=list(outcome.warnings),
        )
    return _json_error(
        outcome.errors[0].message if outcome.errors else "Validation failed.",
        status=422,
        code="validation_failed",
        issues=outcome.issues,
    )


@api_bp.get("/health")
def health():
    return jsonify({"status": "ok"}), 200


@api_bp.get("/currencies")
def list_currencies():
    return jsonify(
        {"currencies": [{"code": c, "precision": precision(c)} for c in supported_currencies()]}
    ), 200


@api_bp.get("/currencies/<code>")
def currency_info(code: str):
    try:
        currency = parse_currency(code, _default_currency())
        places = precision(currency)
    except (ApiValidationError, MoneyError) as e:
        return _json_error(str(e), status=400)
    return jsonify(
        {"code": currency, "precision": places, "smallest_unit": str(smallest_unit(places))}
    ), 200


@api_bp.post("/itemized/calculate")
def itemized_calculate():
    """
    JSON body:
      - payer_id, participant_ids, items, extras, allocation
      - currency (optional), id (optional, seeds RANDOM remainder distribution)
      - confirm_warnings (optional)
    Response:
      - participant_amounts, participant_breakdown, grand_total, warnings
    """
    try:
        data = require_object(request.get_json(silent=True))
        req = parse_itemized_request(data, _default_currency())
    except ApiValidationError as e:
        return _json_error(str(e), status=400)

    mismatch = currency_mismatch(req.allocation, req.currency)
    if mismatch is not None:
        return _outcome_error(AllocationOutcome(errors=(mismatch,)))

    try:
        outcome = calculate_itemized_allocation(
            req.items,
            req.extras,
            req.allocation,
            req.payer_id,
            req.participant_ids,
            expense_id=req.expense_id,
            limits=limits_from_config(current_app.config),
            confirm_warnings=req.confirm_warnings,
        )
    except DataIntegrityError as e:
        return _data_integrity_error(e)

    if outcome.result is None:
        return _outcome_error(outcome)

    result = outcome.result
    return jsonify(
        {
            "currency": req.currency,
            "grand_total": str(result.grand_total),
            "participant_amounts": {pid: str(a) for pid, a in result.participant_amounts.items()},
            "participant_breakdown": {
                pid: breakdown_to_record(b) for pid, b in result.participant_breakdown.items()
            },
            "warnings": [w.to_dict() for w in result.warnings],
        }
    ), 200


@api_bp.post("/settlement/calculate")
def settlement_calculate():
    """
    Stateless settlement over posted expense records and settled transfers.
    """
    try:
        data = require_object(request.get_json(silent=True))
        currency = parse_currency(data.get("currency"), _default_currency())
        expenses, settled = split_settlement_payload(data)
    except ApiValidationError as e:
        return _json_error(str(e), status=400)

    try:
        result = compute_settlement(expenses, settled, default_currency=currency)
    except SettlementInputError as e:
        return _json_error(str(e), status=422, code="mixed_currency")
    except DataIntegrityError as e:
        return _data_integrity_error(e)

    return jsonify(settlement_to_record(result)), 200


@api_bp.post("/trips/<trip_id>/expenses")
def create_expense(trip_id: str):
    """
    Save an expense to a trip.

    split_type "itemized" runs the allocation pipeline and stores the
    computed amounts and breakdown. "equal" and "weighted" store the posted
    participant weights as they are.
    """
    repo = _repo()
    if not repo.enabled:
        return _db_unavailable()

    try:
        data = require_object(request.get_json(silent=True))
        if data.get("split_type") == "itemized":
            req = parse_itemized_request(data, _default_currency())
            expense = build_itemized_expense(
                expense_id=req.expense_id or str(uuid4()),
                payer_id=req.payer_id,
                currency=req.currency,
                items=req.items,
                extras=req.extras,
                allocation=req.allocation,
                participant_ids=req.participant_ids,
                description=req.description,
                trip_id=trip_id,
                limits=limits_from_config(current_app.config),
                confirm_warnings=req.confirm_warnings,
            )
        else:
            record = dict(data)
            record.setdefault("id", str(uuid4()))
            record.setdefault("currency", _default_currency())
            record["trip_id"] = trip_id
            expense = parse_expense(record)
    except ApiValidationError as e:
        return _json_error(str(e), status=400)
    except AllocationRejected as e:
        return _outcome_error(e.outcome)
    except DataIntegrityError as e:
        return _data_integrity_error(e)

    try:
        repo.save_expense(trip_id=trip_id, expense=expense)
    except Exception:
        logger.exception("failed to save expense %s", expense.id)
        return _json_error("Failed to persist expense.", status=500, code="db_error")

    return jsonify(expense_to_record(expense)), 201


def _settle_trip(trip_id: str):
    """
    Load a trip and run the settlement. Returns (expenses, settled_records,
    result, None) on success or (None, None, None, error_response).
    """
    repo = _repo()
    if not repo.enabled:
        return None, None, None, _db_unavailable()

    try:
        expenses = repo.list_trip_expenses(trip_id=trip_id)
        settled_records = repo.list_settled_transfers(trip_id=trip_id)
    except RecordFormatError as e:
        logger.error("stored expense for trip %s is unreadable: %s", trip_id, e)
        return None, None, None, _json_error(
            "A stored expense could not be read.", status=500, code="data_integrity"
        )
    except Exception:
        logger.exception("failed to load trip %s", trip_id)
        return None, None, None, _json_error("Failed to load trip data.", status=500, code="db_error")

    try:
        result = compute_settlement(
            expenses,
            [r.transfer for r in settled_records],
            default_currency=_default_currency(),
        )
    except SettlementInputError as e:
        return None, None, None, _json_error(str(e), status=422, code="mixed_currency")
    except DataIntegrityError as e:
        return None, None, None, _data_integrity_error(e)

    return expenses, settled_records, result, None


@api_bp.get("/trips/<trip_id>/settlement")
def trip_settlement(trip_id: str):
    _, settled_records, result, error = _settle_trip(trip_id)
    if error is not None:
        return error

    body = settlement_to_record(result)
    body["settled_records"] = [
        {"id": r.id, "from_id": r.from_id, "to_id": r.to_id, "amount": str(r.amount)}
        for r in settled_records
    ]
    return jsonify(body), 200


@api_bp.get("/trips/<trip_id>/transfers/breakdown")
def trip_transfer_breakdown(trip_id: str):
    """
    Query params: from_id, to_id. Shows how each expense in the trip feeds
    the debt between the two, next to the suggested transfer amount.
    """
    from_id = request.args.get("from_id", "").strip()
    to_id = request.args.get("to_id", "").strip()
    if not from_id or not to_id:
        return _json_error("Query params 'from_id' and 'to_id' are required.", status=400)

    expenses, _, result, error = _settle_trip(trip_id)
    if error is not None:
        return error

    suggested = next(
        (t.amount for t in result.active_transfers if t.from_id == from_id and t.to_id == to_id),
        Decimal(0),
    )
    breakdown = transfer_breakdown(from_id, to_id, suggested, expenses)
    return jsonify(
        {
            "from_id": breakdown.from_id,
            "to_id": breakdown.to_id,
            "total_amount": str(breakdown.total_amount),
            "direct_total": str(breakdown.direct_total),
            "expenses": [
                {
                    "expense_id": row.expense_id,
                    "description": row.description,
                    "from_paid": str(row.from_paid),
                    "from_owes": str(row.from_owes),
                    "to_paid": str(row.to_paid),
                    "to_owes": str(row.to_owes),
                    "net_contribution": str(row.net_contribution),
                }
                for row in breakdown.expenses
            ],
        }
    ), 200


@api_bp.post("/trips/<trip_id>/settled-transfers")
def create_settled_transfer(trip_id: str):
    repo = _repo()
    if not repo.enabled:
        return _db_unavailable()

    try:
        data = require_object(request.get_json(silent=True))
        currency = parse_currency(data.get("currency"), _default_currency())
        transfer = parse_transfer(data, currency)
    except ApiValidationError as e:
        return _json_error(str(e), status=400)

    try:
        record = repo.record_settled_transfer(trip_id=trip_id, transfer=transfer)
    except Exception:
        logger.exception("failed to record settled transfer for trip %s", trip_id)
        return _json_error("Failed to persist settled transfer.", status=500, code="db_error")

    return jsonify(
        {"id": record.id, "from_id": record.from_id, "to_id": record.to_id, "amount": str(record.amount)}
    ), 201


@api_bp.delete("/trips/<trip_id>/settled-transfers/<transfer_id>")
def delete_settled_transfer(trip_id: str, transfer_id: str):
    repo = _repo()
    if not repo.enabled:
        return _db_unavailable()

    try:
        deleted = repo.delete_settled_transfer(trip_id=trip_id, transfer_id=transfer_id)
    except Exception:
        logger.exception("failed to delete settled transfer %s", transfer_id)
        return _json_error("Failed to delete settled transfer.", status=500, code="db_error")

    if not deleted:
        return _json_error("Settled transfer not found.", status=404, code="not_found")
    return jsonify({"deleted": True, "id": transfer_id}), 200
