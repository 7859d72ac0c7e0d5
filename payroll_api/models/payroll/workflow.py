from datetime import datetime
from payroll_api.extensions import db

WORKFLOW_STATUSES = ("pending", "in_progress", "completed", "rejected")
# "waiting" = not yet actionable; exactly one step is "pending" while the workflow is open
STEP_STATUSES = ("waiting", "pending", "approved", "rejected")
STEP_ROLES = ("hr", "employee", "admin")


class Workflow(db.Model):
    """Month-level sequential approval chain (HR -> reviewer -> Admin)."""
    __tablename__ = "workflows"

    id = db.Column(db.Integer, primary_key=True)
    month = db.Column(db.String(7), nullable=False, unique=True)  # YYYY-MM
    payroll_id = db.Column(db.Integer, db.ForeignKey("payrolls.id", ondelete="SET NULL"))
    initiated_by = db.Column(db.Integer, db.ForeignKey("users.id"))
    initiated_at = db.Column(db.DateTime, default=datetime.utcnow)

    current_step = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(db.Enum(*WORKFLOW_STATUSES, name="workflow_status_enum"), nullable=False, default="pending")
    completed_at = db.Column(db.DateTime)

    # set once the month's records have been generated through the workflow
    payroll_generated = db.Column(db.Boolean, nullable=False, default=False)
    generated_at = db.Column(db.DateTime)
    generated_by = db.Column(db.Integer, db.ForeignKey("users.id"))

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    steps = db.relationship(
        "WorkflowStep",
        back_populates="workflow",
        order_by="WorkflowStep.step_number",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        db.Index("ix_workflows_status", "status"),
    )

    def step(self, number: int):
        return next((s for s in self.steps if s.step_number == number), None)

    def to_dict(self):
        return {
            "id": self.id,
            "month": self.month,
            "payroll_id": self.payroll_id,
            "initiated_by": self.initiated_by,
            "initiated_at": self.initiated_at.isoformat() if self.initiated_at else None,
            "current_step": self.current_step,
            "status": self.status,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "payroll_generated": self.payroll_generated,
            "generated_at": self.generated_at.isoformat() if self.generated_at else None,
            "generated_by": self.generated_by,
            "steps": [s.to_dict() for s in self.steps],
        }


class WorkflowStep(db.Model):
    __tablename__ = "workflow_steps"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(db.Integer, db.ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    step_number = db.Column(db.Integer, nullable=False)
    role = db.Column(db.Enum(*STEP_ROLES, name="workflow_role_enum"), nullable=False)
    approver_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    status = db.Column(db.Enum(*STEP_STATUSES, name="workflow_step_status_enum"), nullable=False, default="waiting")
    approved_at = db.Column(db.DateTime)
    notes = db.Column(db.String(500))

    workflow = db.relationship("Workflow", back_populates="steps")

    __table_args__ = (
        db.UniqueConstraint("workflow_id", "step_number", name="uq_workflow_step_number"),
    )

    def to_dict(self):
        return {
            "step_number": self.step_number,
            "role": self.role,
            "approver_id": self.approver_id,
            "status": self.status,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "notes": self.notes,
        }
