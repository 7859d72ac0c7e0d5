from datetime import date
from decimal import Decimal

import pytest

from payroll_api.common.errors import ValidationError, NotFoundError
from payroll_api.models.payroll.tax_bracket import TaxBracket
from payroll_api.services.tax_brackets import (
    Band, FALLBACK_BANDS, progressive_tax, tax_from_bands, resolve_tax,
    create_bracket, update_bracket, deactivate_bracket, seed_default_brackets,
)

ON = date(2025, 1, 15)


def test_fallback_table_matches_worked_example(app):
    res = resolve_tax(Decimal("500000"), "MW", "MWK", on_date=ON)
    assert res.amount == Decimal("87500.00")
    assert res.rate == Decimal("17.50")
    assert res.source == "fallback"


def test_income_inside_tax_free_band():
    res = tax_from_bands(Decimal("150000"), FALLBACK_BANDS)
    assert res.amount == Decimal("0.00")
    assert res.rate == Decimal("0.00")


def test_top_band_is_open_ended():
    # 350,000 @25% + 2,050,000 @30% + 450,000 @35%
    res = tax_from_bands(Decimal("3000000"), FALLBACK_BANDS)
    assert res.amount == Decimal("87500") + Decimal("615000") + Decimal("157500")


def test_zero_gross_has_zero_rate():
    res = tax_from_bands(Decimal("0"), FALLBACK_BANDS)
    assert res.amount == Decimal("0.00")
    assert res.rate == Decimal("0.00")


@pytest.mark.parametrize("bad", [None, "abc", float("nan"), -1, Decimal("-0.01")])
def test_invalid_gross_yields_zero(app, bad):
    res = resolve_tax(bad, on_date=ON)
    assert res.amount == 0
    assert res.rate == 0


def test_monotonic_over_band_edges():
    points = [Decimal(x) for x in (0, 1, 149999, 150000, 150001, 300000, 500000, 500001,
                                   1000000, 2550000, 2550001, 5000000)]
    taxes = [progressive_tax(g, FALLBACK_BANDS)[0] for g in points]
    assert taxes == sorted(taxes)
    rates = [tax_from_bands(g, FALLBACK_BANDS).rate for g in points[1:]]
    assert rates == sorted(rates)


def test_bands_given_out_of_order_are_sorted():
    shuffled = list(reversed(FALLBACK_BANDS))
    assert tax_from_bands(Decimal("800000"), shuffled) == tax_from_bands(Decimal("800000"), FALLBACK_BANDS)


def test_gap_between_bands_is_untaxed():
    bands = [
        Band("low", Decimal("0"), Decimal("1000"), Decimal("10")),
        Band("high", Decimal("2000"), None, Decimal("50")),
    ]
    tax, used = progressive_tax(Decimal("3000"), bands)
    # 1000 @10% + (3000-2000) @50%
    assert tax == Decimal("600")
    assert [u["name"] for u in used] == ["low", "high"]


def test_overlapping_bands_do_not_tax_twice():
    bands = [
        Band("a", Decimal("0"), Decimal("1000"), Decimal("10")),
        Band("b", Decimal("500"), None, Decimal("20")),
    ]
    tax, _ = progressive_tax(Decimal("2000"), bands)
    assert tax == Decimal("100") + Decimal("200")


def test_configured_brackets_take_precedence(session):
    create_bracket("Flat", 0, None, 10, effective_from=date(2025, 1, 1))
    res = resolve_tax(Decimal("1000"), on_date=ON)
    assert res.source == "configured"
    assert res.amount == Decimal("100.00")


def test_brackets_outside_effective_window_are_ignored(session):
    create_bracket("Old", 0, None, 10, effective_from=date(2024, 1, 1), effective_to=date(2024, 12, 31))
    create_bracket("Future", 0, None, 20, effective_from=date(2025, 2, 1))
    res = resolve_tax(Decimal("1000"), on_date=ON)
    assert res.source == "fallback"


def test_deactivated_brackets_fall_back(session):
    b = create_bracket("Flat", 0, None, 10, effective_from=date(2025, 1, 1))
    deactivate_bracket(b.id)
    assert session.get(TaxBracket, b.id).is_active is False
    assert resolve_tax(Decimal("1000"), on_date=ON).source == "fallback"


def test_lookup_failure_uses_fallback(app, monkeypatch):
    from payroll_api.services import tax_brackets

    def boom(*a, **kw):
        raise RuntimeError("datastore down")

    monkeypatch.setattr(tax_brackets, "current_brackets", boom)
    res = resolve_tax(Decimal("500000"), on_date=ON)
    assert res.amount == Decimal("87500.00")
    assert res.source == "fallback"


def test_seed_default_brackets_is_idempotent(session):
    assert seed_default_brackets(effective_from=date(2025, 1, 1)) == 4
    assert seed_default_brackets(effective_from=date(2025, 1, 1)) == 0
    assert TaxBracket.query.count() == 4
    res = resolve_tax(Decimal("500000"), on_date=ON)
    assert res.source == "configured"
    assert res.amount == Decimal("87500.00")


@pytest.mark.parametrize("kw,msg", [
    (dict(min_amount=-1, max_amount=None, tax_rate=10), "negative"),
    (dict(min_amount=100, max_amount=100, tax_rate=10), "greater than"),
    (dict(min_amount=0, max_amount=None, tax_rate=101), "between 0 and 100"),
])
def test_bracket_validation(session, kw, msg):
    with pytest.raises(ValidationError) as ei:
        create_bracket("Bad", **kw)
    assert msg in ei.value.message


def test_effective_window_must_be_ordered(session):
    with pytest.raises(ValidationError):
        create_bracket("Bad", 0, None, 10, effective_from=date(2025, 2, 1), effective_to=date(2025, 1, 1))


def test_deactivate_unknown_bracket(session):
    with pytest.raises(NotFoundError):
        deactivate_bracket(999)


def test_update_bracket_changes_resolution(session):
    b = create_bracket("Flat", 0, None, 10, effective_from=date(2025, 1, 1))
    updated = update_bracket(b.id, tax_rate=20, bracket_name="Flat 20")

    assert updated.bracket_name == "Flat 20"
    assert updated.tax_rate == Decimal("20")
    assert resolve_tax(Decimal("1000"), on_date=ON).amount == Decimal("200.00")


def test_update_bracket_can_close_and_reopen_the_top_band(session):
    b = create_bracket("Top", 100, None, 10, effective_from=date(2025, 1, 1))
    assert update_bracket(b.id, max_amount=500).max_amount == Decimal("500")
    assert update_bracket(b.id, max_amount=None).max_amount is None


def test_update_bracket_validates_merged_values(session):
    b = create_bracket("Band", 100, 500, 10, effective_from=date(2025, 1, 1))

    # only min changes, but it now sits above the stored max
    with pytest.raises(ValidationError) as ei:
        update_bracket(b.id, min_amount=600)
    assert "greater than" in ei.value.message

    with pytest.raises(ValidationError):
        update_bracket(b.id, effective_to=date(2024, 12, 31))
    with pytest.raises(ValidationError):
        update_bracket(b.id, bracket_name="  ")

    row = session.get(TaxBracket, b.id)
    assert row.min_amount == Decimal("100")
    assert row.effective_to is None


def test_update_unknown_bracket(session):
    with pytest.raises(NotFoundError):
        update_bracket(999, tax_rate=5)


class _Savepoint:
    def __init__(self):
        self.entered = False
        self.exc_type = None

    def __enter__(self):
        self.entered = True
        return self

    def __exit__(self, exc_type, exc, tb):
        self.exc_type = exc_type
        return False


def test_failed_lookup_is_rolled_back_to_a_savepoint(app, monkeypatch):
    from types import SimpleNamespace

    from payroll_api.services import tax_brackets

    sp = _Savepoint()
    conn = SimpleNamespace(dialect=SimpleNamespace(name="postgresql"), begin_nested=lambda: sp)
    monkeypatch.setattr(tax_brackets, "db", SimpleNamespace(session=SimpleNamespace(connection=lambda: conn)))

    def boom(*a, **kw):
        raise RuntimeError("relation tax_brackets does not exist")

    monkeypatch.setattr(tax_brackets, "current_brackets", boom)
    res = resolve_tax(Decimal("500000"), on_date=ON)

    assert sp.entered
    assert sp.exc_type is RuntimeError
    assert res.amount == Decimal("87500.00")
    assert res.source == "fallback"
