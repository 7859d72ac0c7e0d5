# payroll_api/models/security.py
from payroll_api.extensions import db


class Role(db.Model):
    __tablename__ = "roles"
    id   = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), unique=True, nullable=False)  # admin | hr | finance | employee

    users = db.relationship(
        "UserRole",
        back_populates="role",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<Role id={self.id} code={self.code!r}>"

class UserRole(db.Model):
    __tablename__ = "user_roles"
    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    role_id = db.Column(
        db.Integer,
        db.ForeignKey("roles.id", ondelete="CASCADE"),
        primary_key=True,
    )

    role = db.relationship("Role", back_populates="users")
    user = db.relationship(
        "User",
        backref=db.backref(
            "user_roles",
            cascade="all, delete-orphan",
            passive_deletes=True,
        ),
    )

    def __repr__(self) -> str:
        return f"<UserRole user_id={self.user_id} role_id={self.role_id}>"


def first_active_user_id(role_code: str) -> int | None:
    """Lowest-id active user holding `role_code`, or None."""
    from payroll_api.models.user import User

    row = (
        db.session.query(User.id)
        .join(UserRole, UserRole.user_id == User.id)
        .join(Role, Role.id == UserRole.role_id)
        .filter(Role.code == role_code, User.status == "active")
        .order_by(User.id.asc())
        .first()
    )
    return row[0] if row else None
