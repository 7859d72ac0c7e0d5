# payroll_api/common/errors.py


class PayrollError(Exception):
    """Base error for payroll operations."""
    code = "PAYROLL_ERROR"
    status_code = 400

    def __init__(self, message, code=None, status_code=None, payload=None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.payload = payload

    def to_dict(self):
        err = {"message": self.message, "code": self.code}
        if self.payload:
            err["detail"] = self.payload
        return err


class ValidationError(PayrollError):
    """Input rejected before any computation or persistence."""
    code = "VALIDATION_ERROR"
    status_code = 422


class StateViolationError(PayrollError):
    """The record or workflow is not in a state that allows the action."""
    code = "STATE_VIOLATION"
    status_code = 409


class NotFoundError(PayrollError):
    code = "NOT_FOUND"
    status_code = 404
