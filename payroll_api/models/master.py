from datetime import datetime

from payroll_api.extensions import db

CURRENCIES = ("MWK", "USD", "EUR", "GBP")


# Department: global, unique code
class Department(db.Model):
    __tablename__ = "departments"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), unique=True, nullable=False)
    name = db.Column(db.String(120), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class Grade(db.Model):
    """
    A pay grade. Supplies the baseline for monthly payroll generation:

      allowance_*          -> the six fixed monthly allowance components
      pension_percent      -> employee pension deduction rate (0..100)
      overtime_rate        -> default hourly overtime rate when no approved
                              overtime submission carries its own rate
      overtime_multiplier  -> informational; pay uses the app-wide
                              PAYROLL_OVERTIME_MULTIPLIER
    """

    __tablename__ = "grades"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(10), unique=True, nullable=False)
    name = db.Column(db.String(60), unique=True, nullable=False)
    level = db.Column(db.Integer, nullable=False, default=1)
    base_salary = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    currency = db.Column(db.Enum(*CURRENCIES, name="currency_enum"), nullable=False, default="MWK")

    # payroll settings
    pension_percent = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    overtime_rate = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    overtime_multiplier = db.Column(db.Numeric(4, 2), nullable=False, default=1.5)

    # allowances
    allowance_transport = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    allowance_housing = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    allowance_medical = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    allowance_meals = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    allowance_communication = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    allowance_other = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def allowances(self):
        """Return the grade allowances as the payroll value type."""
        from payroll_api.services.payroll_calc import Allowances

        return Allowances(
            transport=self.allowance_transport,
            housing=self.allowance_housing,
            medical=self.allowance_medical,
            meals=self.allowance_meals,
            communication=self.allowance_communication,
            other=self.allowance_other,
        )
