# payroll_api/services/payroll_approvals.py
"""Per-record HR / Finance approval gate.

Each party moves independently from pending to approved or rejected, once.
The record's approval_status is derived from both (see Payroll.approval_status)
and is what mark_as_paid checks.
"""
import logging
from datetime import datetime

from payroll_api.common.errors import ValidationError, StateViolationError
from payroll_api.extensions import db
from payroll_api.models.payroll.payroll import Payroll
from .payroll_common import get_payroll_for_update

log = logging.getLogger(__name__)

PARTIES = ("hr", "finance")


def _transition(payroll_id: int, party: str, status: str, user_id: int, notes: str | None) -> Payroll:
    if party not in PARTIES:
        raise ValidationError('Invalid approval type. Must be "hr" or "finance"')

    rec = get_payroll_for_update(payroll_id)
    if rec.is_paid:
        raise StateViolationError("Cannot update paid payroll records", payload={"payroll_id": rec.id})

    current = getattr(rec, f"{party}_status")
    if current != "pending":
        raise StateViolationError(
            f"{party} approval already {current}",
            payload={"payroll_id": rec.id, "party": party, "status": current},
        )

    setattr(rec, f"{party}_status", status)
    setattr(rec, f"{party}_by", user_id)
    setattr(rec, f"{party}_at", datetime.utcnow())
    setattr(rec, f"{party}_notes", notes or None)
    rec.as_of = rec.computed_on
    db.session.commit()

    log.info("payroll %s %s %s by user %s (now %s)", rec.id, party, status, user_id, rec.approval_status)
    return rec


def approve_payroll(payroll_id: int, party: str, user_id: int, notes: str | None = None) -> Payroll:
    return _transition(payroll_id, party, "approved", user_id, notes)


def reject_payroll(payroll_id: int, party: str, user_id: int, notes: str | None) -> Payroll:
    if not notes or not notes.strip():
        raise ValidationError("Rejection reason is required")
    return _transition(payroll_id, party, "rejected", user_id, notes.strip())
