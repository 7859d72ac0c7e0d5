from datetime import date
from decimal import Decimal

import pytest

from payroll_api.common.errors import ValidationError, NotFoundError
from payroll_api.models.employee import EmployeeOvertime
from payroll_api.models.payroll.payroll import Payroll, PayrollDeduction
from payroll_api.services.payroll_batch import process_all_employees, create_from_previous_month
from payroll_api.services.payroll_common import working_days, previous_month, month_bounds

TODAY = date(2025, 1, 31)


@pytest.mark.parametrize("month,expected", [("2025-01", 23), ("2025-02", 20), ("2024-02", 21), ("2025-06", 21)])
def test_working_days_counts_weekdays(month, expected):
    assert working_days(month) == expected


def test_month_helpers():
    assert previous_month("2025-01") == "2024-12"
    assert month_bounds("2024-02") == (date(2024, 2, 1), date(2024, 2, 29))


@pytest.mark.parametrize("bad", ["2025-1", "2025-13", "25-01", "", None, "2025/01"])
def test_bad_month_rejected(session, bad):
    with pytest.raises(ValidationError):
        process_all_employees(bad, processed_by=1)


def test_process_all_employees_builds_records(session, make_user, make_employee):
    admin = make_user("admin@example.test", "admin")
    e = make_employee()
    res = process_all_employees("2025-01", admin.id, today=TODAY)

    assert res.processed_count == 1
    rec = Payroll.query.filter_by(employee_id=e.id, payroll_month="2025-01").one()
    assert rec.working_days == 23
    assert rec.days_worked == 23
    assert rec.gross_pay == Decimal("500000.00")
    assert rec.tax_amount == Decimal("87500.00")
    assert rec.pension_amount == Decimal("25000.00")
    assert rec.net_pay == Decimal("387500.00")
    assert rec.payment_status == "pending"
    assert rec.approval_status == "pending"
    assert rec.computed_on == TODAY
    assert rec.attendance_rate == 100
    assert rec.deduction_rate == 23


def test_rerun_creates_no_duplicates(session, make_user, make_employee):
    admin = make_user("admin@example.test", "admin")
    make_employee()
    make_employee(salary="300000")

    first = process_all_employees("2025-01", admin.id, today=TODAY)
    second = process_all_employees("2025-01", admin.id, today=TODAY)

    assert first.processed_count == 2
    assert second.processed_count == 0
    assert second.skipped_count == 2
    assert Payroll.query.filter_by(payroll_month="2025-01").count() == 2


def test_ineligible_employees(session, make_user, make_employee):
    admin = make_user("admin@example.test", "admin")
    make_employee(status="terminated")
    make_employee(is_active=False)
    no_grade = make_employee(with_grade=False)

    res = process_all_employees("2025-01", admin.id, today=TODAY)
    assert res.processed_count == 0
    assert res.skipped_count == 1  # the active one without a grade
    assert Payroll.query.count() == 0
    assert no_grade.grade is None


def test_approved_overtime_is_used(session, make_user, make_employee):
    admin = make_user("admin@example.test", "admin")
    e = make_employee(salary="100000")
    session.add(EmployeeOvertime(employee_id=e.id, month="2025-01", hours=10, rate=1000, status="approved"))
    session.add(EmployeeOvertime(employee_id=e.id, month="2025-02", hours=99, rate=1000, status="pending"))
    session.commit()

    process_all_employees("2025-01", admin.id, today=TODAY)
    rec = Payroll.query.filter_by(employee_id=e.id).one()
    assert rec.overtime_hours == 10
    assert rec.overtime_amount == Decimal("15000.00")
    assert rec.gross_pay == Decimal("115000.00")


def test_unapproved_overtime_falls_back_to_grade_rate(session, make_user, make_employee):
    admin = make_user("admin@example.test", "admin")
    e = make_employee()
    session.add(EmployeeOvertime(employee_id=e.id, month="2025-01", hours=5, rate=2000, status="pending"))
    session.commit()

    process_all_employees("2025-01", admin.id, today=TODAY)
    rec = Payroll.query.filter_by(employee_id=e.id).one()
    assert rec.overtime_hours == 0
    assert rec.overtime_rate == Decimal("1000.00")
    assert rec.overtime_amount == Decimal("0.00")


def test_one_failure_does_not_stop_the_batch(session, make_user, make_employee, monkeypatch):
    from payroll_api.services import payroll_calc

    admin = make_user("admin@example.test", "admin")
    bad = make_employee(salary="123456")
    good = make_employee()
    real = payroll_calc.compute_payroll

    def flaky(baseline, on_date, **kw):
        if baseline.base_salary == Decimal("123456"):
            raise RuntimeError("boom")
        return real(baseline, on_date, **kw)

    monkeypatch.setattr(payroll_calc, "compute_payroll", flaky)
    res = process_all_employees("2025-01", admin.id, today=TODAY)

    assert res.processed_count == 1
    assert res.failed_count == 1
    assert Payroll.query.filter_by(employee_id=good.id).count() == 1
    assert Payroll.query.filter_by(employee_id=bad.id).count() == 0


def test_create_from_previous_month(session, make_user, make_employee):
    admin = make_user("admin@example.test", "admin")
    e = make_employee()
    process_all_employees("2025-01", admin.id, today=TODAY)

    jan = Payroll.query.filter_by(employee_id=e.id, payroll_month="2025-01").one()
    jan.bonus_performance = Decimal("5000")
    jan.deduction_lines.append(PayrollDeduction(kind="loan", name="car", amount=Decimal("10000")))
    jan.deduction_lines.append(PayrollDeduction(kind="other", name="union", amount=Decimal("500")))
    jan.hr_status = "approved"
    session.commit()

    res = create_from_previous_month("2025-02", admin.id, today=date(2025, 2, 28))
    assert res.processed_count == 1

    feb = Payroll.query.filter_by(employee_id=e.id, payroll_month="2025-02").one()
    assert feb.notes == "Created from 2025-01 payroll data"
    assert feb.working_days == 20 and feb.days_worked == 20
    assert feb.bonuses_total == Decimal("0.00")
    assert [(d.name, d.amount) for d in feb.loans] == [("car", Decimal("10000.00"))]
    assert feb.other_deductions == []
    assert feb.hr_status == "pending"
    assert feb.payment_status == "pending"
    assert feb.pension_rate == jan.pension_rate
    assert feb.net_pay == Decimal("377500.00")

    again = create_from_previous_month("2025-02", admin.id, today=date(2025, 2, 28))
    assert again.processed_count == 0 and again.skipped_count == 1


def test_create_from_previous_month_needs_source(session, make_user):
    admin = make_user("admin@example.test", "admin")
    with pytest.raises(NotFoundError) as ei:
        create_from_previous_month("2025-03", admin.id)
    assert ei.value.message == "No payroll records found for previous month (2025-02)"


def test_bracket_lookup_failure_does_not_block_the_batch(session, make_user, make_employee, monkeypatch):
    from payroll_api.services import tax_brackets

    def boom(*a, **kw):
        raise RuntimeError("datastore down")

    monkeypatch.setattr(tax_brackets, "current_brackets", boom)
    admin = make_user("admin@example.test", "admin")
    e = make_employee()

    res = process_all_employees("2025-01", admin.id, today=TODAY)
    assert res.processed_count == 1
    assert res.failed_count == 0
    rec = Payroll.query.filter_by(employee_id=e.id).one()
    assert rec.tax_amount == Decimal("87500.00")
    assert rec.net_pay == Decimal("387500.00")


def test_losing_the_unique_key_race_counts_as_skipped(session, make_user, make_employee, monkeypatch):
    from payroll_api.services import payroll_batch

    admin = make_user("admin@example.test", "admin")
    e = make_employee()
    process_all_employees("2025-01", admin.id, today=TODAY)
    first = Payroll.query.filter_by(employee_id=e.id).one()

    # a concurrent run committed its row after this run read the existing keys
    monkeypatch.setattr(payroll_batch, "_existing_employee_ids", lambda month: set())
    res = process_all_employees("2025-01", admin.id, today=TODAY)

    assert res.processed_count == 0
    assert res.skipped_count == 1
    assert res.failed_count == 0
    rows = Payroll.query.filter_by(employee_id=e.id, payroll_month="2025-01").all()
    assert [r.id for r in rows] == [first.id]
