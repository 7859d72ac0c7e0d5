# payroll_api/services/payroll_records.py
from __future__ import annotations

import logging
from datetime import datetime, date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List

from flask import current_app
from sqlalchemy import func, case

from payroll_api.common.errors import ValidationError, StateViolationError
from payroll_api.extensions import db
from payroll_api.models.employee import Employee
from payroll_api.models.master import Department
from payroll_api.models.payroll.payroll import (
    Payroll, PayrollDeduction, PayrollAdjustment,
    ADJUSTMENT_TYPES, ADJUSTMENT_CATEGORIES, ADJUSTMENT_DURATIONS,
)
from .payroll_common import get_payroll_for_update, validate_month, month_records

log = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("days_worked", "bonus_performance", "bonus_annual", "bonus_other", "other_deductions", "notes")


def _non_negative(value, field_name: str) -> Decimal:
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field_name} must be a number")
    if not d.is_finite() or d < 0:
        raise ValidationError(f"{field_name} cannot be negative")
    return d


def _notes(value) -> str | None:
    if value is None:
        return None
    s = str(value)
    if len(s) > 500:
        raise ValidationError("Notes cannot exceed 500 characters")
    return s


def _parse_date(value, field_name: str) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f"{field_name} must be YYYY-MM-DD")


def _ensure_not_paid(rec: Payroll, message: str) -> None:
    if rec.is_paid:
        raise StateViolationError(message, payload={"payroll_id": rec.id})


# ---------- edits ----------
def update_payroll(payroll_id: int, changes: Dict[str, Any], user_id: int | None = None,
                   today: date | None = None) -> Payroll:
    """
    Edit the attendance, bonus, other-deduction and notes inputs of an unpaid record.
    Keys outside UPDATABLE_FIELDS are ignored. The record is recomputed on commit.
    """
    rec = get_payroll_for_update(payroll_id)
    _ensure_not_paid(rec, "Cannot update paid payroll records")
    changes = changes or {}

    # validate everything before touching the record
    values: Dict[str, Any] = {}
    for key in UPDATABLE_FIELDS:
        if key not in changes:
            continue
        value = changes[key]
        if key == "notes":
            values[key] = _notes(value)
        elif key == "other_deductions":
            lines = []
            for item in value or []:
                if not isinstance(item, dict):
                    raise ValidationError("other_deductions must be a list of objects")
                lines.append(PayrollDeduction(
                    kind="other",
                    name=(item.get("name") or "").strip() or None,
                    amount=_non_negative(item.get("amount"), "other deduction amount"),
                    description=item.get("description"),
                ))
            values[key] = lines
        else:
            values[key] = _non_negative(value, key)

    for key, value in values.items():
        if key == "other_deductions":
            rec.deduction_lines = list(rec.loans) + value
        else:
            setattr(rec, key, value)

    rec.as_of = today
    db.session.commit()
    log.info("payroll %s updated by %s", rec.id, user_id)
    return rec


def add_adjustment(payroll_id: int, data: Dict[str, Any], user_id: int, today: date | None = None) -> Payroll:
    """Append a post-tax adjustment and recompute. Adjustments are never edited or removed."""
    rec = get_payroll_for_update(payroll_id)
    _ensure_not_paid(rec, "Cannot adjust paid payroll records")
    data = data or {}

    adj_type = data.get("type")
    if adj_type not in ADJUSTMENT_TYPES:
        raise ValidationError(f"type must be one of {', '.join(ADJUSTMENT_TYPES)}")
    category = data.get("category") or "other"
    if category not in ADJUSTMENT_CATEGORIES:
        raise ValidationError(f"category must be one of {', '.join(ADJUSTMENT_CATEGORIES)}")
    duration = data.get("duration") or "temporary"
    if duration not in ADJUSTMENT_DURATIONS:
        raise ValidationError(f"duration must be one of {', '.join(ADJUSTMENT_DURATIONS)}")
    reason = (data.get("reason") or "").strip()
    if not reason:
        raise ValidationError("reason is required")
    amount = _non_negative(data.get("amount"), "amount")

    details = data.get("duration_details") or {}
    start = _parse_date(details.get("start_date", data.get("start_date")), "start_date")
    end = _parse_date(details.get("end_date", data.get("end_date")), "end_date")
    months = details.get("number_of_months", data.get("number_of_months"))
    if duration == "permanent":
        if start is None or end is None:
            raise ValidationError("permanent adjustments need start_date and end_date")
        if end < start:
            raise ValidationError("end_date must be >= start_date")
    try:
        n_months = int(months) if months not in (None, "") else None
    except (TypeError, ValueError):
        raise ValidationError("number_of_months must be an integer")

    rec.adjustments.append(PayrollAdjustment(
        type=adj_type,
        category=category,
        duration=duration,
        start_date=start,
        end_date=end,
        number_of_months=n_months,
        amount=amount,
        reason=reason,
        changes=data.get("changes") or [],
        applied_by=user_id,
        applied_at=datetime.utcnow(),
    ))
    rec.as_of = today
    db.session.commit()
    log.info("payroll %s: %s adjustment of %s applied by %s", rec.id, adj_type, amount, user_id)
    return rec


def deactivate_payroll(payroll_id: int) -> Payroll:
    rec = get_payroll_for_update(payroll_id)
    _ensure_not_paid(rec, "Cannot deactivate paid payroll records")
    rec.is_active = False
    rec.as_of = rec.computed_on
    db.session.commit()
    return rec


# ---------- payslips ----------
def _payslip_path(rec: Payroll) -> str:
    prefix = current_app.config.get("PAYSLIP_STORAGE_PREFIX", "/payslips").rstrip("/")
    return f"{prefix}/{rec.employee_id}/{rec.payroll_month}.pdf"


def _mark_payslip(rec: Payroll) -> None:
    if rec.approval_status != "approved":
        raise StateViolationError("Payslip requires HR and Finance approval", payload={"payroll_id": rec.id})
    rec.payslip_generated = True
    rec.payslip_path = _payslip_path(rec)
    rec.payslip_generated_at = datetime.utcnow()
    rec.as_of = rec.computed_on


def generate_payslip(payroll_id: int) -> Payroll:
    """Record payslip metadata; rendering the document happens elsewhere."""
    rec = get_payroll_for_update(payroll_id)
    _mark_payslip(rec)
    db.session.commit()
    return rec


def generate_all_payslips(month: str) -> Dict[str, Any]:
    month = validate_month(month)
    ids = [
        r.id for r in month_records(month)
        .filter(Payroll.hr_status == "approved", Payroll.finance_status == "approved")
        .filter(Payroll.payslip_generated.is_(False))
        .order_by(Payroll.id.asc())
        .all()
    ]

    results: List[Dict[str, Any]] = []
    for pid in ids:
        try:
            rec = get_payroll_for_update(pid)
            _mark_payslip(rec)
            db.session.commit()
            results.append({"payroll_id": pid, "employee_id": rec.employee_id, "success": True})
        except Exception as e:
            db.session.rollback()
            log.exception("payslip generation failed for payroll %s", pid)
            results.append({"payroll_id": pid, "success": False, "error": str(e)})

    ok = sum(1 for r in results if r["success"])
    return {
        "month": month,
        "total_records": len(results),
        "success_count": ok,
        "failure_count": len(results) - ok,
        "results": results,
    }


def payslip_breakdown(rec: Payroll) -> Dict[str, Any]:
    """Read-only figures for the payslip renderer."""
    return {
        "employee_id": rec.employee_id,
        "payroll_month": rec.payroll_month,
        "gross_pay": rec.gross_pay,
        "deductions": {
            "tax": rec.tax_amount,
            "pension": rec.pension_amount,
            "loans": sum((Decimal(str(l.amount)) for l in rec.loans), Decimal("0")),
            "other": sum((Decimal(str(o.amount)) for o in rec.other_deductions), Decimal("0")),
            "total": rec.deductions_total,
        },
        "net_pay": rec.net_pay,
        "currency": rec.currency,
    }


# ---------- summaries ----------
def _num(x) -> float:
    return float(x or 0)


def get_payroll_summary(month: str) -> Dict[str, Any]:
    month = validate_month(month)
    row = (
        db.session.query(
            func.count(Payroll.id),
            func.coalesce(func.sum(Payroll.gross_pay), 0),
            func.coalesce(func.sum(Payroll.deductions_total), 0),
            func.coalesce(func.sum(Payroll.net_pay), 0),
            func.coalesce(func.sum(Payroll.tax_amount), 0),
            func.coalesce(func.sum(Payroll.pension_amount), 0),
            func.coalesce(func.sum(case((Payroll.payment_status == "paid", 1), else_=0)), 0),
            func.coalesce(func.sum(case((Payroll.payment_status == "pending", 1), else_=0)), 0),
        )
        .filter(Payroll.payroll_month == month, Payroll.is_active.is_(True))
        .one()
    )
    return {
        "month": month,
        "total_employees": int(row[0] or 0),
        "total_gross_pay": _num(row[1]),
        "total_deductions": _num(row[2]),
        "total_net_pay": _num(row[3]),
        "total_tax": _num(row[4]),
        "total_pension": _num(row[5]),
        "paid_count": int(row[6] or 0),
        "pending_count": int(row[7] or 0),
    }


def get_department_summary(month: str) -> List[Dict[str, Any]]:
    month = validate_month(month)
    total_net = func.sum(Payroll.net_pay)
    rows = (
        db.session.query(
            Department.id,
            Department.name,
            func.count(Payroll.id),
            func.sum(Payroll.gross_pay),
            total_net,
            func.sum(Payroll.deductions_total),
            func.avg(Payroll.net_pay),
        )
        .select_from(Payroll)
        .join(Employee, Employee.id == Payroll.employee_id)
        .join(Department, Department.id == Employee.department_id)
        .filter(Payroll.payroll_month == month, Payroll.is_active.is_(True))
        .group_by(Department.id, Department.name)
        .order_by(total_net.desc())
        .all()
    )
    return [
        {
            "department_id": r[0],
            "department": r[1],
            "employee_count": int(r[2]),
            "total_gross_pay": _num(r[3]),
            "total_net_pay": _num(r[4]),
            "total_deductions": _num(r[5]),
            "average_net_pay": round(_num(r[6])),
        }
        for r in rows
    ]
