from datetime import datetime
from payroll_api.extensions import db
from werkzeug.security import generate_password_hash

class User(db.Model):
    __tablename__ = "users"

    id           = db.Column(db.Integer, primary_key=True)
    email        = db.Column(db.String(255), unique=True, index=True, nullable=False)
    password_hash= db.Column(db.String(255), nullable=False)
    full_name    = db.Column(db.String(255), nullable=False)
    status       = db.Column(db.String(20), default="active")  # only "active" users are picked as approvers
    created_at   = db.Column(db.DateTime, default=datetime.utcnow)

    def set_password(self, raw: str):
        self.password_hash = generate_password_hash(raw)
