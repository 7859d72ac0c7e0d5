from datetime import datetime
from payroll_api.extensions import db

EMPLOYMENT_STATUSES = ("active", "inactive", "suspended", "terminated", "resigned", "retired")
OVERTIME_STATUSES = ("pending", "approved", "rejected", "paid")

class Employee(db.Model):
    __tablename__ = "employees"

    id = db.Column(db.Integer, primary_key=True)
    department_id = db.Column(db.Integer, db.ForeignKey("departments.id", ondelete="RESTRICT"), nullable=True)
    grade_id      = db.Column(db.Integer, db.ForeignKey("grades.id", ondelete="RESTRICT"), nullable=True)
    user_id       = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, unique=True)

    code  = db.Column(db.String(32), unique=True, nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    first_name = db.Column(db.String(80), nullable=False)
    last_name  = db.Column(db.String(80), nullable=True)

    current_salary = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    status = db.Column(db.String(16), default="active", nullable=False)   # one of EMPLOYMENT_STATUSES
    is_active = db.Column(db.Boolean, default=True, nullable=False)       # soft delete flag

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        db.Index("ix_emp_dept_id", "department_id"),
        db.Index("ix_emp_status_active", "status", "is_active"),
    )

    department = db.relationship("Department", lazy="joined")
    grade      = db.relationship("Grade", lazy="joined")

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


class EmployeeOvertime(db.Model):
    """Monthly overtime submission; payroll generation consumes approved rows only."""
    __tablename__ = "employee_overtime"

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True)
    month = db.Column(db.String(7), nullable=False)  # YYYY-MM
    hours = db.Column(db.Numeric(6, 2), nullable=False, default=0)
    rate = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    description = db.Column(db.String(500))
    status = db.Column(db.Enum(*OVERTIME_STATUSES, name="overtime_status_enum"), nullable=False, default="pending")
    approved_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    approved_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    employee = db.relationship("Employee", backref=db.backref("overtime_records", lazy="dynamic"))

    __table_args__ = (
        db.UniqueConstraint("employee_id", "month", name="uq_overtime_employee_month"),
    )
