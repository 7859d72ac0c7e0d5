# payroll_api/services/tax_brackets.py
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, List, Optional, Sequence, Tuple

from payroll_api.common.errors import ValidationError, NotFoundError
from payroll_api.extensions import db
from payroll_api.models.payroll.tax_bracket import TaxBracket

log = logging.getLogger(__name__)

ZERO = Decimal("0")
ONE = Decimal("1")
CENT = Decimal("0.01")


@dataclass(frozen=True)
class Band:
    name: str
    min_amount: Decimal
    max_amount: Optional[Decimal]   # None = no upper limit
    rate: Decimal                   # percent


@dataclass(frozen=True)
class TaxResult:
    amount: Decimal
    rate: Decimal                   # effective rate, percent
    brackets_used: Tuple[dict, ...] = field(default=(), compare=False)
    source: str = field(default="configured", compare=False)


# Built-in monthly table used when no bracket configuration is active.
FALLBACK_BANDS: Tuple[Band, ...] = (
    Band("Tax Free", Decimal("0"), Decimal("150000"), Decimal("0")),
    Band("25% Bracket", Decimal("150001"), Decimal("500000"), Decimal("25")),
    Band("30% Bracket", Decimal("500001"), Decimal("2550000"), Decimal("30")),
    Band("35% Bracket", Decimal("2550001"), None, Decimal("35")),
)


def _q(x: Decimal) -> Decimal:
    return x.quantize(CENT, rounding=ROUND_HALF_UP)


def _amount(x) -> Optional[Decimal]:
    """Parse a gross amount; None for anything that is not a finite, non-negative number."""
    if x is None or isinstance(x, bool):
        return None
    try:
        d = x if isinstance(x, Decimal) else Decimal(str(x))
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not d.is_finite() or d < 0:
        return None
    return d


def progressive_tax(gross: Decimal, bands: Iterable[Band]) -> Tuple[Decimal, List[dict]]:
    """
    Marginal tax of `gross` over `bands` (any order; sorted by min_amount here).

    A band quoted in whole units as starting one above the previous ceiling
    (150,001 after 150,000) continues from that ceiling, so no slice of income
    falls between two bands. Overlapping bands are clipped to the previous
    ceiling so no income is taxed twice.
    """
    tax = ZERO
    used: List[dict] = []
    prev_ceiling: Optional[Decimal] = None

    for band in sorted(bands, key=lambda b: b.min_amount):
        floor = band.min_amount
        if prev_ceiling is not None and floor <= prev_ceiling + ONE:
            floor = prev_ceiling
        if gross <= floor:
            break

        ceiling = gross if band.max_amount is None else min(gross, band.max_amount)
        taxable = ceiling - floor
        if taxable > 0:
            part = taxable * band.rate / Decimal("100")
            tax += part
            used.append({
                "name": band.name,
                "min": band.min_amount,
                "max": band.max_amount,
                "rate": band.rate,
                "taxable": taxable,
                "amount": _q(part),
            })

        if band.max_amount is None or gross <= band.max_amount:
            break
        prev_ceiling = band.max_amount

    return tax, used


def tax_from_bands(gross: Decimal, bands: Sequence[Band], source: str = "configured") -> TaxResult:
    tax, used = progressive_tax(gross, bands)
    amount = _q(tax)
    rate = _q(amount / gross * 100) if gross > 0 else ZERO
    return TaxResult(amount=amount, rate=rate, brackets_used=tuple(used), source=source)


def current_brackets(country: str, currency: str, on_date: date) -> List[TaxBracket]:
    """Active brackets for (country, currency) whose window contains `on_date`, lowest first."""
    return (
        TaxBracket.query
        .filter(TaxBracket.country == country, TaxBracket.currency == currency)
        .filter(TaxBracket.is_active.is_(True))
        .filter(TaxBracket.effective_from <= on_date)
        .filter(db.or_(TaxBracket.effective_to.is_(None), TaxBracket.effective_to >= on_date))
        .order_by(TaxBracket.min_amount.asc(), TaxBracket.id.asc())
        .all()
    )


def _as_band(b: TaxBracket) -> Band:
    return Band(
        name=b.bracket_name,
        min_amount=Decimal(str(b.min_amount)),
        max_amount=Decimal(str(b.max_amount)) if b.max_amount is not None else None,
        rate=Decimal(str(b.tax_rate)),
    )


@contextmanager
def _savepoint():
    """
    SAVEPOINT on the session's connection around the bracket read. A failed
    read rolls back to it and leaves the caller's transaction usable.
    Session.begin_nested() flushes, and this runs inside before_flush.
    """
    conn = db.session.connection()
    if conn.dialect.name == "sqlite":
        # pysqlite savepoints are unreliable; a failed SELECT does not abort an SQLite transaction
        yield
        return
    with conn.begin_nested():
        yield


def resolve_tax(gross_amount, country: str = "MW", currency: str = "MWK", on_date: date | None = None) -> TaxResult:
    """
    Tax owed on `gross_amount` and the effective rate, both rounded to 2 dp.

    Uses the configured brackets effective on `on_date` (today by default).
    Falls back to FALLBACK_BANDS when none are active or the lookup fails.
    Invalid input (None, NaN, negative) yields a zero result instead of raising,
    since this runs inside the record save path.
    """
    gross = _amount(gross_amount)
    if gross is None:
        return TaxResult(amount=ZERO, rate=ZERO, source="invalid")

    on_date = on_date or date.today()
    try:
        with _savepoint():
            rows = current_brackets(country, currency, on_date)
    except Exception:
        log.warning("tax bracket lookup failed for %s/%s; using built-in table", country, currency, exc_info=True)
        return tax_from_bands(gross, FALLBACK_BANDS, "fallback")

    if not rows:
        log.info("no active tax brackets for %s/%s on %s; using built-in table", country, currency, on_date)
        return tax_from_bands(gross, FALLBACK_BANDS, "fallback")

    return tax_from_bands(gross, [_as_band(b) for b in rows], "configured")


# ---------- administration ----------
def _dec(x, field_name: str) -> Decimal:
    try:
        return Decimal(str(x))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field_name} must be a number")


def validate_bracket(min_amount, max_amount, tax_rate, effective_from: date, effective_to: date | None):
    mn = _dec(min_amount, "min_amount")
    mx = _dec(max_amount, "max_amount") if max_amount is not None else None
    rate = _dec(tax_rate, "tax_rate")
    if mn < 0:
        raise ValidationError("Minimum amount cannot be negative")
    if mx is not None and mx <= mn:
        raise ValidationError("Maximum amount must be greater than minimum amount")
    if rate < 0 or rate > 100:
        raise ValidationError("Tax rate must be between 0 and 100")
    if effective_to is not None and effective_to < effective_from:
        raise ValidationError("effective_to must be >= effective_from")
    return mn, mx, rate


def create_bracket(bracket_name: str, min_amount, max_amount, tax_rate, country: str = "MW",
                   currency: str = "MWK", effective_from: date | None = None,
                   effective_to: date | None = None) -> TaxBracket:
    name = (bracket_name or "").strip()
    if not name:
        raise ValidationError("Bracket name is required")
    effective_from = effective_from or date.today()
    mn, mx, rate = validate_bracket(min_amount, max_amount, tax_rate, effective_from, effective_to)

    b = TaxBracket(
        bracket_name=name,
        min_amount=mn,
        max_amount=mx,
        tax_rate=rate,
        country=country,
        currency=currency,
        is_active=True,
        effective_from=effective_from,
        effective_to=effective_to,
    )
    db.session.add(b)
    db.session.commit()
    return b


BRACKET_FIELDS = (
    "bracket_name", "min_amount", "max_amount", "tax_rate",
    "country", "currency", "is_active", "effective_from", "effective_to",
)


def update_bracket(bracket_id: int, **changes) -> TaxBracket:
    """
    Edit a bracket. Unknown keys are ignored; the merged values are validated
    as a whole before anything is written. Pass max_amount=None / effective_to=None
    to make the band open-ended.
    """
    b = db.session.get(TaxBracket, bracket_id)
    if b is None:
        raise NotFoundError("Tax bracket not found", payload={"bracket_id": bracket_id})

    merged = {k: changes[k] if k in changes else getattr(b, k) for k in BRACKET_FIELDS}
    name = (merged["bracket_name"] or "").strip()
    if not name:
        raise ValidationError("Bracket name is required")
    if merged["effective_from"] is None:
        raise ValidationError("effective_from is required")
    mn, mx, rate = validate_bracket(
        merged["min_amount"], merged["max_amount"], merged["tax_rate"],
        merged["effective_from"], merged["effective_to"],
    )

    b.bracket_name = name
    b.min_amount = mn
    b.max_amount = mx
    b.tax_rate = rate
    b.country = merged["country"]
    b.currency = merged["currency"]
    b.is_active = bool(merged["is_active"])
    b.effective_from = merged["effective_from"]
    b.effective_to = merged["effective_to"]
    db.session.commit()
    log.info("tax bracket %s updated (%s)", b.id, ", ".join(sorted(k for k in changes if k in BRACKET_FIELDS)))
    return b


def deactivate_bracket(bracket_id: int) -> TaxBracket:
    b = db.session.get(TaxBracket, bracket_id)
    if b is None:
        raise NotFoundError("Tax bracket not found")
    b.is_active = False
    db.session.commit()
    return b


def seed_default_brackets(country: str = "MW", currency: str = "MWK", effective_from: date | None = None) -> int:
    """Store the built-in table as configuration unless brackets already exist. Returns rows created."""
    exists = (
        TaxBracket.query
        .filter(TaxBracket.country == country, TaxBracket.currency == currency)
        .first()
    )
    if exists:
        return 0
    eff = effective_from or date.today()
    for band in FALLBACK_BANDS:
        db.session.add(TaxBracket(
            bracket_name=band.name,
            min_amount=band.min_amount,
            max_amount=band.max_amount,
            tax_rate=band.rate,
            country=country,
            currency=currency,
            is_active=True,
            effective_from=eff,
        ))
    db.session.commit()
    return len(FALLBACK_BANDS)
