# payroll_api/services/payroll_batch.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field, asdict
from datetime import date
from decimal import Decimal
from typing import List

from flask import current_app
from sqlalchemy.exc import IntegrityError

from payroll_api.common.errors import NotFoundError
from payroll_api.extensions import db
from payroll_api.models.employee import Employee, EmployeeOvertime
from payroll_api.models.payroll.payroll import Payroll, PayrollDeduction
from .payroll_common import validate_month, month_bounds, previous_month, working_days

log = logging.getLogger(__name__)


@dataclass
class BatchResult:
    month: str
    processed_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    payroll_ids: List[int] = field(default_factory=list)

    def to_dict(self):
        return asdict(self)


def _existing_employee_ids(month: str) -> set[int]:
    # deactivated records still hold the (employee, month) key
    rows = db.session.query(Payroll.employee_id).filter(Payroll.payroll_month == month).all()
    return {r[0] for r in rows}


def _approved_overtime(employee_id: int, month: str) -> EmployeeOvertime | None:
    return (
        EmployeeOvertime.query
        .filter_by(employee_id=employee_id, month=month, status="approved")
        .first()
    )


def _save(record: Payroll, result: BatchResult) -> None:
    """Commit one record; a duplicate key is a skip, anything else a failure."""
    try:
        db.session.add(record)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        result.skipped_count += 1
        log.info("payroll %s already exists for employee %s", result.month, record.employee_id)
    except Exception:
        db.session.rollback()
        result.failed_count += 1
        log.exception("failed to save payroll %s for employee %s", result.month, record.employee_id)
    else:
        result.processed_count += 1
        result.payroll_ids.append(record.id)


def process_all_employees(month: str, processed_by: int, today: date | None = None) -> BatchResult:
    """
    Create the month's payroll record for every active employee that lacks one.

    Safe to re-run: employees already holding a record for the month are skipped,
    and a concurrent run losing the unique-key race counts as a skip. Each record
    is committed on its own, so one failure never undoes the others.
    """
    month = validate_month(month)
    start, end = month_bounds(month)
    wd = working_days(month)
    today = today or date.today()

    configured_mult = Decimal(str(current_app.config.get("PAYROLL_OVERTIME_MULTIPLIER", "1.5")))
    result = BatchResult(month=month)

    employees = (
        Employee.query
        .filter(Employee.status == "active", Employee.is_active.is_(True))
        .order_by(Employee.id.asc())
        .all()
    )
    existing = _existing_employee_ids(month)

    for emp in employees:
        if emp.id in existing:
            result.skipped_count += 1
            continue
        grade = emp.grade
        if grade is None:
            log.info("skipping employee %s: no grade assigned", emp.id)
            result.skipped_count += 1
            continue

        if grade.overtime_multiplier is not None and Decimal(str(grade.overtime_multiplier)) != configured_mult:
            log.warning(
                "grade %s overtime multiplier %s differs from configured %s; using configured value",
                grade.code, grade.overtime_multiplier, configured_mult,
            )

        ot = _approved_overtime(emp.id, month)
        allowances = grade.allowances()

        rec = Payroll(
            employee_id=emp.id,
            payroll_month=month,
            period_start=start,
            period_end=end,
            working_days=wd,
            days_worked=wd,  # full attendance until adjusted
            base_salary=emp.current_salary,
            allowance_transport=allowances.transport,
            allowance_housing=allowances.housing,
            allowance_medical=allowances.medical,
            allowance_meals=allowances.meals,
            allowance_communication=allowances.communication,
            allowance_other=allowances.other,
            overtime_hours=ot.hours if ot else 0,
            overtime_rate=ot.rate if ot else grade.overtime_rate,
            bonus_performance=0,
            bonus_annual=0,
            bonus_other=0,
            pension_rate=grade.pension_percent,
            currency=grade.currency or current_app.config.get("PAYROLL_DEFAULT_CURRENCY", "MWK"),
            exchange_rate=1,
            processed_by=processed_by,
            payment_status="pending",
            hr_status="pending",
            finance_status="pending",
        )
        rec.as_of = today
        _save(rec, result)

    log.info(
        "payroll %s: processed=%s skipped=%s failed=%s",
        month, result.processed_count, result.skipped_count, result.failed_count,
    )
    return result


def create_from_previous_month(month: str, processed_by: int, today: date | None = None) -> BatchResult:
    """
    Clone the previous month's active records into `month`.

    Carries salary, allowances, overtime rate, pension rate, loans and currency;
    resets overtime hours, bonuses, other deductions, payment, approvals and payslip.
    """
    month = validate_month(month)
    prev = previous_month(month)
    start, end = month_bounds(month)
    wd = working_days(month)
    today = today or date.today()

    prev_records = (
        Payroll.query
        .filter(Payroll.payroll_month == prev, Payroll.is_active.is_(True))
        .order_by(Payroll.id.asc())
        .all()
    )
    if not prev_records:
        raise NotFoundError(f"No payroll records found for previous month ({prev})")

    result = BatchResult(month=month)
    existing = _existing_employee_ids(month)

    # detach the source values first; a rollback in _save expires loaded rows
    sources = []
    for p in prev_records:
        sources.append({
            "employee_id": p.employee_id,
            "base_salary": p.base_salary,
            "allowance_transport": p.allowance_transport,
            "allowance_housing": p.allowance_housing,
            "allowance_medical": p.allowance_medical,
            "allowance_meals": p.allowance_meals,
            "allowance_communication": p.allowance_communication,
            "allowance_other": p.allowance_other,
            "overtime_rate": p.overtime_rate,
            "pension_rate": p.pension_rate,
            "currency": p.currency,
            "exchange_rate": p.exchange_rate,
            "loans": [(l.name, l.amount, l.description) for l in p.loans],
        })

    for src in sources:
        if src["employee_id"] in existing:
            result.skipped_count += 1
            continue
        loans = src.pop("loans")
        rec = Payroll(
            payroll_month=month,
            period_start=start,
            period_end=end,
            working_days=wd,
            days_worked=wd,
            overtime_hours=0,
            bonus_performance=0,
            bonus_annual=0,
            bonus_other=0,
            processed_by=processed_by,
            payment_status="pending",
            payment_method="bank_transfer",
            hr_status="pending",
            finance_status="pending",
            payslip_generated=False,
            notes=f"Created from {prev} payroll data",
            **src,
        )
        for name, amount, description in loans:
            rec.deduction_lines.append(
                PayrollDeduction(kind="loan", name=name, amount=amount, description=description)
            )
        rec.as_of = today
        _save(rec, result)

    log.info(
        "payroll %s cloned from %s: processed=%s skipped=%s failed=%s",
        month, prev, result.processed_count, result.skipped_count, result.failed_count,
    )
    return result
