from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from payroll_api.common.errors import ValidationError
from payroll_api.services.payroll_calc import (
    Allowances, Overtime, Bonuses, DeductionLine, AdjustmentEntry,
    PayrollBaseline, compute_payroll,
)
from payroll_api.services.tax_brackets import FALLBACK_BANDS, tax_from_bands

ON = date(2025, 1, 15)


def _fallback_tax(gross, country, currency, on_date):
    return tax_from_bands(gross, FALLBACK_BANDS, "fallback")


def _baseline(**kw):
    base = dict(
        base_salary=Decimal("500000"),
        working_days=22,
        days_worked=Decimal("22"),
        allowances=Allowances.zero(),
        overtime=Overtime(hours=Decimal("0"), rate=Decimal("0")),
        bonuses=Bonuses(performance=Decimal("0"), annual=Decimal("0"), other=Decimal("0")),
        pension_rate=Decimal("5"),
        loans=(),
        other_deductions=(),
        currency="MWK",
        exchange_rate=Decimal("1"),
        adjustments=(),
    )
    base.update(kw)
    return PayrollBaseline(**base)


def _compute(b, on_date=ON):
    return compute_payroll(b, on_date, tax_lookup=_fallback_tax)


def test_worked_example_500k():
    r = _compute(_baseline())
    assert r.gross_pay == Decimal("500000.00")
    assert r.tax.amount == Decimal("87500.00")
    assert r.pension_amount == Decimal("25000.00")
    assert r.deductions_total == Decimal("112500.00")
    assert r.net_pay == Decimal("387500.00")


def test_temporary_addition_after_tax():
    adj = AdjustmentEntry(type="addition", duration="temporary", amount=Decimal("10000"))
    r = _compute(_baseline(adjustments=(adj,)))
    # adjustments never touch the taxable base
    assert r.tax.amount == Decimal("87500.00")
    assert r.net_pay == Decimal("397500.00")


def test_earnings_pipeline():
    b = _baseline(
        base_salary=Decimal("220000"),
        days_worked=Decimal("11"),
        allowances=Allowances(
            transport=Decimal("1000"), housing=Decimal("2000"), medical=Decimal("3000"),
            meals=Decimal("4000"), communication=Decimal("5000"), other=Decimal("6000"),
        ),
        overtime=Overtime(hours=Decimal("10"), rate=Decimal("100")),
        bonuses=Bonuses(performance=Decimal("500"), annual=Decimal("250"), other=Decimal("250")),
    )
    r = _compute(b)
    assert r.prorated_salary == Decimal("110000.00")
    assert r.allowances_total == Decimal("21000.00")
    assert r.overtime_amount == Decimal("1500.00")
    assert r.bonuses_total == Decimal("1000.00")
    assert r.gross_pay == Decimal("133500.00")
    assert r.tax.amount == Decimal("0.00")


def test_overtime_multiplier_is_configurable():
    b = _baseline(overtime=Overtime(hours=Decimal("10"), rate=Decimal("100")))
    r = compute_payroll(b, ON, overtime_multiplier=Decimal("2"), tax_lookup=_fallback_tax)
    assert r.overtime_amount == Decimal("2000.00")


def test_loans_and_other_deductions():
    b = _baseline(
        loans=(DeductionLine(amount=Decimal("10000"), name="car"),),
        other_deductions=(DeductionLine(amount=Decimal("2500"), name="union"),),
    )
    r = _compute(b)
    assert r.deductions_total == Decimal("125000.00")
    assert r.net_pay == Decimal("375000.00")


def test_net_pay_floors_at_zero():
    b = _baseline(loans=(DeductionLine(amount=Decimal("1000000")),))
    assert _compute(b).net_pay == Decimal("0.00")


def test_deduction_adjustment_floors_at_zero():
    adj = AdjustmentEntry(type="deduction", duration="temporary", amount=Decimal("999999"))
    assert _compute(_baseline(adjustments=(adj,))).net_pay == Decimal("0.00")


def test_adjustments_apply_in_order_with_floor():
    # floor applies at each deduction, so the later addition is not eaten
    ded = AdjustmentEntry(type="deduction", duration="temporary", amount=Decimal("400000"))
    add = AdjustmentEntry(type="addition", duration="temporary", amount=Decimal("1000"))
    assert _compute(_baseline(adjustments=(ded, add))).net_pay == Decimal("1000.00")
    assert _compute(_baseline(adjustments=(add, ded))).net_pay == Decimal("0.00")


def test_adjustment_type_other_than_addition_subtracts():
    adj = AdjustmentEntry(type="adjustment", duration="temporary", amount=Decimal("7500"))
    assert _compute(_baseline(adjustments=(adj,))).net_pay == Decimal("380000.00")


def test_permanent_adjustment_only_inside_window():
    adj = AdjustmentEntry(
        type="addition", duration="permanent", amount=Decimal("5000"),
        start_date=date(2025, 1, 1), end_date=date(2025, 3, 31),
    )
    b = _baseline(adjustments=(adj,))
    assert _compute(b, date(2025, 1, 1)).net_pay == Decimal("392500.00")
    assert _compute(b, date(2025, 3, 31)).net_pay == Decimal("392500.00")
    assert _compute(b, date(2025, 4, 1)).net_pay == Decimal("387500.00")
    assert _compute(b, date(2024, 12, 31)).net_pay == Decimal("387500.00")


def test_recompute_is_idempotent():
    adj = AdjustmentEntry(type="addition", duration="temporary", amount=Decimal("33.335"))
    b = _baseline(days_worked=Decimal("17.5"), adjustments=(adj,))
    assert _compute(b) == _compute(b)


@pytest.mark.parametrize("wd", [0, -1, None])
def test_working_days_must_be_positive(wd):
    with pytest.raises(ValidationError):
        _compute(_baseline(working_days=wd))


def test_negative_days_worked_rejected():
    with pytest.raises(ValidationError):
        _compute(replace(_baseline(), days_worked=Decimal("-1")))
