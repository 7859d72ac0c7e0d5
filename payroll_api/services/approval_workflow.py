# payroll_api/services/approval_workflow.py
"""Month-level sequential approval: HR, then a second reviewer, then Admin.

Only the step numbered `current_step` is ever "pending"; later steps wait.
A rejection at any step ends the workflow. There is no reopen path and the
one-workflow-per-month key keeps a rejected month closed.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Mapping

from sqlalchemy.exc import IntegrityError

from payroll_api.common.errors import ValidationError, StateViolationError, NotFoundError
from payroll_api.extensions import db
from payroll_api.models.payroll.payroll import Payroll
from payroll_api.models.payroll.workflow import Workflow, WorkflowStep, STEP_ROLES
from payroll_api.models.security import first_active_user_id
from .payroll_batch import process_all_employees
from .payroll_common import validate_month

log = logging.getLogger(__name__)

OPEN_STATUSES = ("pending", "in_progress")


def _get_for_update(month: str) -> Workflow:
    wf = (
        Workflow.query
        .filter(Workflow.month == month)
        .with_for_update(of=Workflow)
        .populate_existing()
        .first()
    )
    if wf is None:
        raise NotFoundError(f"No workflow found for {month}", payload={"month": month})
    return wf


def _resolve_approvers(approvers: Mapping[str, int] | None) -> Dict[str, int]:
    approvers = dict(approvers or {})
    out = {}
    for role in STEP_ROLES:
        uid = approvers.get(role) or first_active_user_id(role)
        if not uid:
            raise ValidationError(f"No active {role} approver available")
        out[role] = uid
    return out


def create_workflow(month: str, initiated_by: int | None, approvers: Mapping[str, int] | None = None,
                    payroll_id: int | None = None) -> Workflow:
    """
    Open the month's approval chain. Approvers are fixed here, either from
    `approvers` ({role: user_id}) or as the first active user holding each role.
    """
    month = validate_month(month)
    if Workflow.query.filter_by(month=month).first():
        raise StateViolationError(f"Workflow for {month} already exists", payload={"month": month})
    if payroll_id is not None and db.session.get(Payroll, payroll_id) is None:
        raise NotFoundError("Payroll record not found", payload={"payroll_id": payroll_id})

    resolved = _resolve_approvers(approvers)
    wf = Workflow(
        month=month,
        payroll_id=payroll_id,
        initiated_by=initiated_by,
        initiated_at=datetime.utcnow(),
        current_step=1,
        status="pending",
    )
    for n, role in enumerate(STEP_ROLES, start=1):
        wf.steps.append(WorkflowStep(
            step_number=n,
            role=role,
            approver_id=resolved[role],
            status="pending" if n == 1 else "waiting",
        ))

    db.session.add(wf)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise StateViolationError(f"Workflow for {month} already exists", payload={"month": month})

    log.info("workflow %s created by %s", month, initiated_by)
    return wf


def _actionable_step(wf: Workflow, user_id: int) -> WorkflowStep:
    step = wf.step(wf.current_step) if wf.status in OPEN_STATUSES else None
    if step is None or step.status != "pending" or step.approver_id != user_id:
        raise StateViolationError(
            "No pending approval for this user",
            payload={"month": wf.month, "user_id": user_id, "workflow_status": wf.status},
        )
    return step


def _release_payrolls(wf: Workflow) -> int:
    """Move the governed records' payment status to approved. Paid records stay as they are."""
    if wf.payroll_id is not None:
        q = Payroll.query.filter(Payroll.id == wf.payroll_id)
    else:
        q = Payroll.query.filter(Payroll.payroll_month == wf.month, Payroll.is_active.is_(True))
    q = q.filter(Payroll.payment_status == "pending")

    n = 0
    for rec in q.with_for_update(of=Payroll).all():
        rec.payment_status = "approved"
        rec.as_of = rec.computed_on
        n += 1
    return n


def approve_step(month: str, user_id: int, notes: str | None = None) -> Workflow:
    month = validate_month(month)
    wf = _get_for_update(month)
    step = _actionable_step(wf, user_id)

    step.status = "approved"
    step.approved_at = datetime.utcnow()
    step.notes = notes

    nxt = wf.step(wf.current_step + 1)
    if nxt is None:
        wf.status = "completed"
        wf.completed_at = datetime.utcnow()
        released = _release_payrolls(wf)
        log.info("workflow %s completed; %s payroll record(s) released for payment", month, released)
    else:
        wf.current_step = nxt.step_number
        wf.status = "in_progress"
        nxt.status = "pending"
        log.info("workflow %s step %s approved by %s", month, step.step_number, user_id)

    db.session.commit()
    return wf


def reject_step(month: str, user_id: int, notes: str | None = None) -> Workflow:
    month = validate_month(month)
    wf = _get_for_update(month)
    step = _actionable_step(wf, user_id)

    step.status = "rejected"
    step.approved_at = datetime.utcnow()
    step.notes = notes
    wf.status = "rejected"
    db.session.commit()

    log.info("workflow %s rejected at step %s by %s", month, step.step_number, user_id)
    return wf


def check_can_generate(month: str) -> Dict[str, Any]:
    """Whether the month's records may be generated through its workflow."""
    month = validate_month(month)
    wf = Workflow.query.filter_by(month=month).first()
    if wf is None:
        return {"can_generate": False, "month": month, "reason": "No workflow exists for this month"}
    if wf.payroll_generated:
        return {"can_generate": False, "month": month, "reason": "Payroll already generated for this month"}
    if wf.status != "completed":
        return {"can_generate": False, "month": month, "reason": f"Workflow status: {wf.status}"}
    return {"can_generate": True, "month": month, "workflow_id": wf.id}


def mark_payroll_generated(month: str, user_id: int, today: date | None = None) -> Dict[str, Any]:
    """
    Generate the month's records once its workflow is completed.

    The workflow is claimed (payroll_generated, generated_at, generated_by) before
    the batch runs, so a second call fails even while the first is still working.
    New records are released for payment like the ones present at completion.
    """
    month = validate_month(month)
    wf = _get_for_update(month)
    if wf.status != "completed":
        raise StateViolationError(
            "Workflow must be approved before generating payroll",
            payload={"month": month, "workflow_status": wf.status},
        )
    if wf.payroll_generated:
        raise StateViolationError("Payroll already generated for this month", payload={"month": month})

    wf.payroll_generated = True
    wf.generated_at = datetime.utcnow()
    wf.generated_by = user_id
    db.session.commit()

    batch = process_all_employees(month, user_id, today=today)

    wf = _get_for_update(month)
    released = _release_payrolls(wf)
    db.session.commit()

    log.info(
        "workflow %s: payroll generated by %s (processed=%s, released=%s)",
        month, user_id, batch.processed_count, released,
    )
    return {
        "month": month,
        "message": f"Payroll generated for {batch.processed_count} employees",
        "payroll_count": batch.processed_count,
        "released_count": released,
        "batch": batch,
        "workflow": wf,
    }


def get_workflow_status(month: str) -> Dict[str, Any]:
    month = validate_month(month)
    wf = Workflow.query.filter_by(month=month).first()
    if wf is None:
        return {"exists": False, "month": month, "message": f"No workflow for {month}", "can_create": True}
    return {"exists": True, "can_create": False, **wf.to_dict()}


def get_pending_approvals(user_id: int, month: str) -> Dict[str, Any]:
    month = validate_month(month)
    wf = Workflow.query.filter(Workflow.month == month, Workflow.status.in_(OPEN_STATUSES)).first()
    if wf is None:
        return {"has_pending": False, "message": "No active workflow"}

    step = wf.step(wf.current_step)
    if step is None or step.status != "pending" or step.approver_id != user_id:
        return {"has_pending": False, "message": "No pending approvals for you"}

    return {
        "has_pending": True,
        "workflow": wf.to_dict(),
        "step": {"step_number": step.step_number, "role": step.role, "can_approve": True},
    }


def get_workflow_history(limit: int = 10) -> List[Workflow]:
    return (
        Workflow.query
        .order_by(Workflow.created_at.desc(), Workflow.id.desc())
        .limit(limit)
        .all()
    )
