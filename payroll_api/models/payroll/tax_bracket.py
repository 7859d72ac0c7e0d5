from datetime import datetime, date
from payroll_api.extensions import db

class TaxBracket(db.Model):
    """One marginal band of a progressive income tax table.

    `max_amount` NULL means no upper limit; `effective_to` NULL means no expiry.
    Brackets are never deleted, only switched off with `is_active = False`.
    """
    __tablename__ = "tax_brackets"

    id = db.Column(db.Integer, primary_key=True)
    bracket_name = db.Column(db.String(80), nullable=False)
    min_amount = db.Column(db.Numeric(16, 2), nullable=False)
    max_amount = db.Column(db.Numeric(16, 2))
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False)  # percent, 0..100

    country = db.Column(db.String(2), nullable=False, default="MW")
    currency = db.Column(db.String(3), nullable=False, default="MWK")

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    effective_from = db.Column(db.Date, nullable=False, default=date.today)
    effective_to = db.Column(db.Date)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.Index(
            "ix_tax_brackets_resolve",
            "country", "currency", "is_active", "effective_from", "effective_to",
        ),
    )
