# payroll_api/services/payroll_calc.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional, Tuple

from payroll_api.common.errors import ValidationError
from .tax_brackets import TaxResult, resolve_tax

ZERO = Decimal("0")
CENT = Decimal("0.01")
DEFAULT_OVERTIME_MULTIPLIER = Decimal("1.5")


def _d(x) -> Decimal:
    if x is None:
        return ZERO
    return x if isinstance(x, Decimal) else Decimal(str(x))


def _q(x: Decimal) -> Decimal:
    return x.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Allowances:
    transport: Decimal
    housing: Decimal
    medical: Decimal
    meals: Decimal
    communication: Decimal
    other: Decimal

    @property
    def total(self) -> Decimal:
        return sum(
            (_d(v) for v in (self.transport, self.housing, self.medical,
                             self.meals, self.communication, self.other)),
            ZERO,
        )

    @classmethod
    def zero(cls) -> "Allowances":
        return cls(ZERO, ZERO, ZERO, ZERO, ZERO, ZERO)


@dataclass(frozen=True)
class Overtime:
    hours: Decimal
    rate: Decimal


@dataclass(frozen=True)
class Bonuses:
    performance: Decimal
    annual: Decimal
    other: Decimal

    @property
    def total(self) -> Decimal:
        return _d(self.performance) + _d(self.annual) + _d(self.other)


@dataclass(frozen=True)
class DeductionLine:
    amount: Decimal
    name: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class AdjustmentEntry:
    type: str                       # addition | deduction | adjustment
    duration: str                   # temporary | permanent
    amount: Decimal
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    def in_effect(self, on_date: date) -> bool:
        if self.duration == "temporary":
            return True
        if self.start_date is None or self.end_date is None:
            return False
        return self.start_date <= on_date <= self.end_date


@dataclass(frozen=True)
class PayrollBaseline:
    base_salary: Decimal
    working_days: int
    days_worked: Decimal
    allowances: Allowances
    overtime: Overtime
    bonuses: Bonuses
    pension_rate: Decimal
    loans: Tuple[DeductionLine, ...]
    other_deductions: Tuple[DeductionLine, ...]
    currency: str
    exchange_rate: Decimal
    adjustments: Tuple[AdjustmentEntry, ...] = field(default=())


@dataclass(frozen=True)
class PayrollComputation:
    prorated_salary: Decimal
    allowances_total: Decimal
    overtime_amount: Decimal
    bonuses_total: Decimal
    gross_pay: Decimal
    tax: TaxResult
    pension_amount: Decimal
    deductions_total: Decimal
    net_pay: Decimal


def compute_payroll(
    baseline: PayrollBaseline,
    on_date: date,
    *,
    overtime_multiplier: Decimal = DEFAULT_OVERTIME_MULTIPLIER,
    country: str = "MW",
    tax_lookup: Callable[..., TaxResult] | None = None,
) -> PayrollComputation:
    """
    Computed payroll fields as a pure function of `baseline` and `on_date`.

    Order is fixed: prorate, allowances, overtime, bonuses, gross, tax, pension,
    deductions, net (floored at 0), then post-tax adjustments in list order.
    `on_date` selects the tax brackets and decides which permanent adjustments
    are in effect; nothing else reads the clock.
    """
    working_days = int(baseline.working_days or 0)
    if working_days <= 0:
        raise ValidationError("working_days must be greater than zero")
    days_worked = _d(baseline.days_worked)
    if days_worked < 0:
        raise ValidationError("days_worked cannot be negative")
    if baseline.base_salary is None:
        raise ValidationError("base_salary is required")

    lookup = tax_lookup or resolve_tax

    # 1-5: earnings
    prorated = _q(_d(baseline.base_salary) * days_worked / Decimal(working_days))
    allowances_total = _q(baseline.allowances.total)
    overtime_amount = _q(_d(baseline.overtime.hours) * _d(baseline.overtime.rate) * _d(overtime_multiplier))
    bonuses_total = _q(baseline.bonuses.total)
    gross = prorated + allowances_total + overtime_amount + bonuses_total

    # 6-8: deductions
    tax = lookup(gross, country, baseline.currency, on_date)
    pension = _q(gross * _d(baseline.pension_rate) / Decimal("100"))
    loans = sum((_d(l.amount) for l in baseline.loans), ZERO)
    others = sum((_d(o.amount) for o in baseline.other_deductions), ZERO)
    deductions_total = _q(tax.amount + pension + loans + others)

    # 9: net, never negative
    net = max(ZERO, gross - deductions_total)

    # 10: post-tax adjustments
    for adj in baseline.adjustments:
        if not adj.in_effect(on_date):
            continue
        if adj.type == "addition":
            net = net + _d(adj.amount)
        else:
            net = max(ZERO, net - _d(adj.amount))

    return PayrollComputation(
        prorated_salary=prorated,
        allowances_total=allowances_total,
        overtime_amount=overtime_amount,
        bonuses_total=bonuses_total,
        gross_pay=_q(gross),
        tax=tax,
        pension_amount=pension,
        deductions_total=deductions_total,
        net_pay=_q(net),
    )
