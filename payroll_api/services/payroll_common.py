import re
from calendar import monthrange
from datetime import date, timedelta
from typing import Tuple

from payroll_api.common.errors import ValidationError, NotFoundError
from payroll_api.models.payroll.payroll import Payroll

_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def validate_month(month: str) -> str:
    """Return `month` stripped, or raise ValidationError unless it is YYYY-MM."""
    m = (month or "").strip() if isinstance(month, str) else ""
    if not _MONTH_RE.match(m):
        raise ValidationError("Invalid month format. Use YYYY-MM", payload={"month": month})
    return m


def month_bounds(month: str) -> Tuple[date, date]:
    m = validate_month(month)
    y, mo = int(m[:4]), int(m[5:])
    return date(y, mo, 1), date(y, mo, monthrange(y, mo)[1])


def previous_month(month: str) -> str:
    start, _ = month_bounds(month)
    prev = start - timedelta(days=1)
    return f"{prev.year:04d}-{prev.month:02d}"


def working_days(month: str) -> int:
    """Monday-Friday days in the month. No holiday calendar."""
    start, end = month_bounds(month)
    d, n = start, 0
    while d <= end:
        if d.weekday() < 5:
            n += 1
        d += timedelta(days=1)
    return n


def get_payroll_for_update(payroll_id: int) -> Payroll:
    """
    Load a payroll record for mutation.
    Row-locked with SELECT ... FOR UPDATE on databases that support it
    (SQLite ignores the clause); the version column catches the rest.
    """
    rec = (
        Payroll.query
        .filter(Payroll.id == payroll_id)
        .with_for_update(of=Payroll)
        .populate_existing()
        .first()
    )
    if rec is None:
        raise NotFoundError("Payroll record not found", payload={"payroll_id": payroll_id})
    return rec


def month_records(month: str, active_only: bool = True):
    q = Payroll.query.filter(Payroll.payroll_month == validate_month(month))
    if active_only:
        q = q.filter(Payroll.is_active.is_(True))
    return q
