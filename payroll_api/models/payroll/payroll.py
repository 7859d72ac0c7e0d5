from __future__ import annotations

from datetime import datetime, date
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from payroll_api.extensions import db
from payroll_api.models.master import CURRENCIES

PAYMENT_STATUSES = ("pending", "approved", "processing", "paid", "failed")
PAYMENT_METHODS = ("bank_transfer", "mobile_money", "cash", "cheque")
APPROVAL_STATUSES = ("pending", "approved", "rejected")

ADJUSTMENT_TYPES = ("addition", "deduction", "adjustment")
ADJUSTMENT_CATEGORIES = ("salary", "allowance", "bonus", "tax", "other", "edit")
ADJUSTMENT_DURATIONS = ("temporary", "permanent")

# the only columns a paid record may still change
PAYSLIP_FIELDS = frozenset({"payslip_generated", "payslip_path", "payslip_generated_at", "updated_at"})


def _pct(ratio: Decimal) -> int:
    return int((ratio * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class Payroll(db.Model):
    """One employee's pay for one month.

    Input columns (baseline) are edited by callers; the computed columns
    (prorated_salary, *_total, overtime_amount, gross_pay, tax_*, pension_amount,
    net_pay) are rewritten from the inputs on every flush, see `_recompute_before_flush`.
    """
    __tablename__ = "payrolls"

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id", ondelete="RESTRICT"), nullable=False)
    payroll_month = db.Column(db.String(7), nullable=False)  # YYYY-MM

    # pay period
    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False)
    working_days = db.Column(db.Integer, nullable=False)
    days_worked = db.Column(db.Numeric(5, 2), nullable=False)

    # salary
    base_salary = db.Column(db.Numeric(14, 2), nullable=False)
    prorated_salary = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    # allowances
    allowance_transport = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    allowance_housing = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    allowance_medical = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    allowance_meals = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    allowance_communication = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    allowance_other = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    allowances_total = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    # overtime
    overtime_hours = db.Column(db.Numeric(6, 2), nullable=False, default=0)
    overtime_rate = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    overtime_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    # bonuses
    bonus_performance = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    bonus_annual = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    bonus_other = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    bonuses_total = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    gross_pay = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    # statutory deductions
    tax_rate = db.Column(db.Numeric(6, 2), nullable=False, default=0)  # effective %, derived
    tax_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    pension_rate = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    pension_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    deductions_total = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    net_pay = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    # payment
    payment_status = db.Column(db.Enum(*PAYMENT_STATUSES, name="payment_status_enum"), nullable=False, default="pending")
    payment_method = db.Column(db.Enum(*PAYMENT_METHODS, name="payment_method_enum"), nullable=False, default="bank_transfer")
    payment_reference = db.Column(db.String(120))
    paid_at = db.Column(db.DateTime)
    payment_batch_id = db.Column(db.String(64))

    # approvals
    hr_status = db.Column(db.Enum(*APPROVAL_STATUSES, name="hr_approval_enum"), nullable=False, default="pending")
    hr_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    hr_at = db.Column(db.DateTime)
    hr_notes = db.Column(db.String(500))
    finance_status = db.Column(db.Enum(*APPROVAL_STATUSES, name="finance_approval_enum"), nullable=False, default="pending")
    finance_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    finance_at = db.Column(db.DateTime)
    finance_notes = db.Column(db.String(500))

    # payslip
    payslip_generated = db.Column(db.Boolean, nullable=False, default=False)
    payslip_path = db.Column(db.String(255))
    payslip_generated_at = db.Column(db.DateTime)

    processed_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    currency = db.Column(db.Enum(*CURRENCIES, name="currency_enum"), nullable=False, default="MWK")
    exchange_rate = db.Column(db.Numeric(12, 6), nullable=False, default=1)
    notes = db.Column(db.String(500))
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    computed_on = db.Column(db.Date)  # date permanent adjustments were last evaluated against
    version_id = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    employee = db.relationship("Employee", lazy="joined")
    deduction_lines = db.relationship(
        "PayrollDeduction",
        back_populates="payroll",
        order_by="PayrollDeduction.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    adjustments = db.relationship(
        "PayrollAdjustment",
        back_populates="payroll",
        order_by="PayrollAdjustment.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        db.UniqueConstraint("employee_id", "payroll_month", name="uq_payroll_employee_month"),
        db.Index("ix_payrolls_month", "payroll_month"),
        db.Index("ix_payrolls_payment_status", "payment_status"),
        db.Index("ix_payrolls_approvals", "hr_status", "finance_status"),
    )
    __mapper_args__ = {"version_id_col": version_id}

    # evaluation date for the next recomputation; not persisted
    as_of = None

    # ---- derived ----
    @property
    def approval_status(self) -> str:
        if self.hr_status == "rejected" or self.finance_status == "rejected":
            return "rejected"
        if self.hr_status == "approved" and self.finance_status == "approved":
            return "approved"
        return "pending"

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"

    @property
    def attendance_rate(self) -> int:
        if not self.working_days:
            return 0
        return _pct(Decimal(str(self.days_worked)) / Decimal(self.working_days))

    @property
    def deduction_rate(self) -> int:
        gross = Decimal(str(self.gross_pay or 0))
        if gross == 0:
            return 0
        return _pct(Decimal(str(self.deductions_total or 0)) / gross)

    @property
    def loans(self):
        return [d for d in self.deduction_lines if d.kind == "loan"]

    @property
    def other_deductions(self):
        return [d for d in self.deduction_lines if d.kind == "other"]

    # ---- computation ----
    def baseline(self):
        from payroll_api.services.payroll_calc import (
            PayrollBaseline, Allowances, Overtime, Bonuses, DeductionLine,
        )

        return PayrollBaseline(
            base_salary=self.base_salary,
            working_days=self.working_days,
            days_worked=self.days_worked,
            allowances=Allowances(
                transport=self.allowance_transport,
                housing=self.allowance_housing,
                medical=self.allowance_medical,
                meals=self.allowance_meals,
                communication=self.allowance_communication,
                other=self.allowance_other,
            ),
            overtime=Overtime(hours=self.overtime_hours, rate=self.overtime_rate),
            bonuses=Bonuses(
                performance=self.bonus_performance,
                annual=self.bonus_annual,
                other=self.bonus_other,
            ),
            pension_rate=self.pension_rate,
            loans=tuple(DeductionLine(amount=d.amount, name=d.name, description=d.description) for d in self.loans),
            other_deductions=tuple(
                DeductionLine(amount=d.amount, name=d.name, description=d.description) for d in self.other_deductions
            ),
            currency=self.currency,
            exchange_rate=self.exchange_rate,
            adjustments=tuple(a.entry() for a in self.adjustments),
        )

    def recompute(self, on_date: date | None = None, overtime_multiplier=None, country: str | None = None):
        """Rewrite every computed column from the current inputs."""
        from payroll_api.services.payroll_calc import compute_payroll, DEFAULT_OVERTIME_MULTIPLIER

        on_date = on_date or self.as_of or date.today()
        result = compute_payroll(
            self.baseline(),
            on_date,
            overtime_multiplier=overtime_multiplier or DEFAULT_OVERTIME_MULTIPLIER,
            country=country or "MW",
        )
        self.prorated_salary = result.prorated_salary
        self.allowances_total = result.allowances_total
        self.overtime_amount = result.overtime_amount
        self.bonuses_total = result.bonuses_total
        self.gross_pay = result.gross_pay
        self.tax_amount = result.tax.amount
        self.tax_rate = result.tax.rate
        self.pension_amount = result.pension_amount
        self.deductions_total = result.deductions_total
        self.net_pay = result.net_pay
        self.computed_on = on_date
        return result

    def to_dict(self):
        def _f(x):
            return float(x) if x is not None else None

        def _iso(x):
            return x.isoformat() if x else None

        return {
            "id": self.id,
            "employee_id": self.employee_id,
            "payroll_month": self.payroll_month,
            "pay_period": {
                "start_date": _iso(self.period_start),
                "end_date": _iso(self.period_end),
                "working_days": self.working_days,
                "days_worked": _f(self.days_worked),
            },
            "salary": {"base": _f(self.base_salary), "prorated": _f(self.prorated_salary)},
            "allowances": {
                "transport": _f(self.allowance_transport),
                "housing": _f(self.allowance_housing),
                "medical": _f(self.allowance_medical),
                "meals": _f(self.allowance_meals),
                "communication": _f(self.allowance_communication),
                "other": _f(self.allowance_other),
                "total": _f(self.allowances_total),
            },
            "overtime": {
                "hours": _f(self.overtime_hours),
                "rate": _f(self.overtime_rate),
                "amount": _f(self.overtime_amount),
            },
            "bonuses": {
                "performance": _f(self.bonus_performance),
                "annual": _f(self.bonus_annual),
                "other": _f(self.bonus_other),
                "total": _f(self.bonuses_total),
            },
            "gross_pay": _f(self.gross_pay),
            "deductions": {
                "tax": {"rate": _f(self.tax_rate), "amount": _f(self.tax_amount)},
                "pension": {"rate": _f(self.pension_rate), "amount": _f(self.pension_amount)},
                "loans": [d.to_dict() for d in self.loans],
                "other": [d.to_dict() for d in self.other_deductions],
                "total": _f(self.deductions_total),
            },
            "net_pay": _f(self.net_pay),
            "payment": {
                "status": self.payment_status,
                "method": self.payment_method,
                "reference": self.payment_reference,
                "paid_at": _iso(self.paid_at),
                "batch_id": self.payment_batch_id,
            },
            "approvals": {
                "hr": {"status": self.hr_status, "by": self.hr_by, "at": _iso(self.hr_at), "notes": self.hr_notes},
                "finance": {
                    "status": self.finance_status, "by": self.finance_by,
                    "at": _iso(self.finance_at), "notes": self.finance_notes,
                },
            },
            "approval_status": self.approval_status,
            "payslip": {
                "generated": self.payslip_generated,
                "path": self.payslip_path,
                "generated_at": _iso(self.payslip_generated_at),
            },
            "adjustments": [a.to_dict() for a in self.adjustments],
            "currency": self.currency,
            "exchange_rate": _f(self.exchange_rate),
            "processed_by": self.processed_by,
            "notes": self.notes,
            "is_active": self.is_active,
        }


class PayrollDeduction(db.Model):
    """Loan repayment or other named deduction line on a payroll record."""
    __tablename__ = "payroll_deductions"

    id = db.Column(db.Integer, primary_key=True)
    payroll_id = db.Column(db.Integer, db.ForeignKey("payrolls.id", ondelete="CASCADE"), nullable=False, index=True)
    kind = db.Column(db.Enum("loan", "other", name="payroll_deduction_kind_enum"), nullable=False)
    name = db.Column(db.String(120))
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    description = db.Column(db.String(255))

    payroll = db.relationship("Payroll", back_populates="deduction_lines")

    def to_dict(self):
        return {
            "name": self.name,
            "amount": float(self.amount) if self.amount is not None else None,
            "description": self.description,
        }


class PayrollAdjustment(db.Model):
    """Append-only, post-tax addition or deduction against a payroll record."""
    __tablename__ = "payroll_adjustments"

    id = db.Column(db.Integer, primary_key=True)
    payroll_id = db.Column(db.Integer, db.ForeignKey("payrolls.id", ondelete="CASCADE"), nullable=False, index=True)

    type = db.Column(db.Enum(*ADJUSTMENT_TYPES, name="adjustment_type_enum"), nullable=False)
    category = db.Column(db.Enum(*ADJUSTMENT_CATEGORIES, name="adjustment_category_enum"), nullable=False)
    duration = db.Column(db.Enum(*ADJUSTMENT_DURATIONS, name="adjustment_duration_enum"), nullable=False, default="temporary")
    start_date = db.Column(db.Date)
    end_date = db.Column(db.Date)
    number_of_months = db.Column(db.Integer)

    amount = db.Column(db.Numeric(14, 2), nullable=False)
    reason = db.Column(db.String(255), nullable=False)
    changes = db.Column(db.JSON)  # [{"field", "old_value", "new_value"}]

    applied_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    applied_at = db.Column(db.DateTime, default=datetime.utcnow)

    payroll = db.relationship("Payroll", back_populates="adjustments")

    def entry(self):
        from payroll_api.services.payroll_calc import AdjustmentEntry

        return AdjustmentEntry(
            type=self.type,
            duration=self.duration,
            amount=self.amount,
            start_date=self.start_date,
            end_date=self.end_date,
        )

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "category": self.category,
            "duration": self.duration,
            "duration_details": {
                "start_date": self.start_date.isoformat() if self.start_date else None,
                "end_date": self.end_date.isoformat() if self.end_date else None,
                "number_of_months": self.number_of_months,
            },
            "amount": float(self.amount) if self.amount is not None else None,
            "reason": self.reason,
            "applied_by": self.applied_by,
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
            "changes": self.changes or [],
        }


# ---------- flush hooks ----------
def _was_paid(record: Payroll) -> bool:
    """True when the row as loaded from the database is already paid."""
    if inspect(record).pending:
        return False
    hist = inspect(record).attrs.payment_status.load_history()
    before = list(hist.unchanged or ()) + list(hist.deleted or ())
    return "paid" in before


def _changed_keys(record: Payroll) -> set[str]:
    return {a.key for a in inspect(record).attrs if a.history.has_changes()}


def _payroll_settings():
    from flask import current_app, has_app_context

    if not has_app_context():
        return None, None
    cfg = current_app.config
    mult = cfg.get("PAYROLL_OVERTIME_MULTIPLIER")
    return (Decimal(str(mult)) if mult is not None else None), cfg.get("PAYROLL_TAX_COUNTRY")


@event.listens_for(Session, "before_flush")
def _recompute_before_flush(session, flush_context, instances):
    """Enforce paid-record immutability and recompute every touched payroll."""
    from payroll_api.common.errors import StateViolationError

    deleted = list(session.deleted)
    for obj in deleted:
        if isinstance(obj, Payroll):
            with session.no_autoflush:
                paid = _was_paid(obj)
            if paid:
                raise StateViolationError("Cannot delete paid payroll records", payload={"payroll_id": obj.id})

    touched: dict[int, Payroll] = {}
    for obj in list(session.new) + list(session.dirty) + deleted:
        if isinstance(obj, Payroll):
            if obj not in session.deleted:
                touched[id(obj)] = obj
        elif isinstance(obj, (PayrollDeduction, PayrollAdjustment)):
            with session.no_autoflush:
                parent = obj.payroll
                paid = parent is not None and _was_paid(parent)
            if paid:
                raise StateViolationError("Cannot update paid payroll records")
            if parent is not None and parent not in session.deleted:
                touched[id(parent)] = parent

    if not touched:
        return

    multiplier, country = _payroll_settings()
    for record in touched.values():
        with session.no_autoflush:
            paid = _was_paid(record)
        if paid:
            if _changed_keys(record) - PAYSLIP_FIELDS:
                raise StateViolationError("Cannot update paid payroll records")
            continue
        with session.no_autoflush:
            record.recompute(overtime_multiplier=multiplier, country=country)
