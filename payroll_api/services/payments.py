# payroll_api/services/payments.py
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from payroll_api.common.errors import ValidationError, StateViolationError, NotFoundError
from payroll_api.extensions import db
from payroll_api.models.payroll.payroll import Payroll, PAYMENT_METHODS
from .payroll_common import get_payroll_for_update, validate_month, month_records

log = logging.getLogger(__name__)


def _check_method(method: str) -> str:
    method = method or "bank_transfer"
    if method not in PAYMENT_METHODS:
        raise ValidationError(f"method must be one of {', '.join(PAYMENT_METHODS)}")
    return method


def _pay(rec: Payroll, reference: str | None, method: str, batch_id: str | None) -> None:
    if rec.is_paid:
        raise StateViolationError("Payroll is already paid", payload={"payroll_id": rec.id})
    if rec.approval_status != "approved":
        raise StateViolationError("Payroll must be approved before payment", payload={"payroll_id": rec.id})

    rec.payment_status = "paid"
    rec.payment_reference = reference
    rec.payment_method = method
    rec.payment_batch_id = batch_id
    rec.paid_at = datetime.utcnow()
    rec.as_of = rec.computed_on


def mark_as_paid(payroll_id: int, reference: str | None = None, method: str = "bank_transfer",
                 batch_id: str | None = None) -> Payroll:
    """Disburse one dual-approved record. A record can be paid once."""
    method = _check_method(method)
    rec = get_payroll_for_update(payroll_id)
    _pay(rec, reference, method, batch_id)
    db.session.commit()
    log.info("payroll %s paid (%s, ref=%s)", rec.id, method, reference)
    return rec


def process_batch_payment(month: str, batch_id: str, method: str = "bank_transfer") -> Dict[str, Any]:
    """
    Pay every HR+Finance approved, unpaid record of `month`.

    Each record is committed on its own; a failure is rolled back, logged and
    reported in `results` without stopping the batch.
    """
    month = validate_month(month)
    method = _check_method(method)
    batch_id = (batch_id or "").strip() if isinstance(batch_id, str) else batch_id
    if not batch_id:
        raise ValidationError("batch_id is required")

    ids = [
        r.id for r in month_records(month)
        .filter(Payroll.hr_status == "approved", Payroll.finance_status == "approved")
        .filter(Payroll.payment_status.in_(("pending", "approved")))
        .order_by(Payroll.id.asc())
        .all()
    ]
    if not ids:
        raise NotFoundError("No approved payrolls found for batch payment", payload={"month": month})

    results: List[Dict[str, Any]] = []
    total = Decimal("0")
    for pid in ids:
        try:
            rec = get_payroll_for_update(pid)
            reference = f"BATCH-{batch_id}-{rec.employee_id}"
            _pay(rec, reference, method, batch_id)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            log.exception("batch %s: payment failed for payroll %s", batch_id, pid)
            results.append({"payroll_id": pid, "success": False, "error": str(e)})
            continue

        amount = Decimal(str(rec.net_pay))
        total += amount
        results.append({
            "payroll_id": rec.id,
            "employee_id": rec.employee_id,
            "amount": amount,
            "reference": reference,
            "success": True,
        })

    ok = sum(1 for r in results if r["success"])
    log.info("batch %s for %s: %s paid, %s failed, total %s", batch_id, month, ok, len(results) - ok, total)
    return {
        "batch_id": batch_id,
        "month": month,
        "total_records": len(ids),
        "success_count": ok,
        "failure_count": len(results) - ok,
        "total_amount": total,
        "results": results,
    }
