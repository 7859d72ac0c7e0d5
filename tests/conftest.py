import os
from decimal import Decimal

import pytest

from payroll_api import create_app
from payroll_api.extensions import db
from payroll_api.models.user import User
from payroll_api.models.security import Role, UserRole
from payroll_api.models.master import Department, Grade
from payroll_api.models.employee import Employee


@pytest.fixture(scope="function")
def app():
    os.environ["DATABASE_URL"] = "sqlite:///:memory:"
    app = create_app()
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope="function")
def session(app):
    with app.app_context():
        yield db.session


@pytest.fixture
def make_user(session):
    def _make(email, role=None, status="active"):
        u = User(email=email, full_name=email.split("@")[0], status=status)
        u.set_password("secret")
        session.add(u)
        session.flush()
        if role:
            r = Role.query.filter_by(code=role).first()
            if r is None:
                r = Role(code=role)
                session.add(r)
                session.flush()
            session.add(UserRole(user_id=u.id, role_id=r.id))
        session.commit()
        return u
    return _make


@pytest.fixture
def grade(session):
    g = Grade(
        code="G1", name="Officer", level=1, base_salary=Decimal("500000"), currency="MWK",
        pension_percent=Decimal("5"), overtime_rate=Decimal("1000"), overtime_multiplier=Decimal("1.5"),
        allowance_transport=0, allowance_housing=0, allowance_medical=0,
        allowance_meals=0, allowance_communication=0, allowance_other=0,
    )
    session.add(g)
    session.commit()
    return g


@pytest.fixture
def department(session):
    d = Department(code="FIN", name="Finance")
    session.add(d)
    session.commit()
    return d


@pytest.fixture
def make_employee(session, grade, department):
    counter = {"n": 0}

    def _make(salary="500000", status="active", is_active=True, with_grade=True, dept=None):
        counter["n"] += 1
        n = counter["n"]
        e = Employee(
            code=f"E{n:03d}",
            email=f"e{n}@example.test",
            first_name=f"Emp{n}",
            current_salary=Decimal(salary),
            status=status,
            is_active=is_active,
            grade_id=grade.id if with_grade else None,
            department_id=(dept or department).id,
        )
        session.add(e)
        session.commit()
        return e
    return _make
