# payroll_api/models/payroll/__init__.py
# Import order matters: brackets first, then payroll records, then workflows
# (which reference payrolls).
from payroll_api.extensions import db  # noqa

from .tax_bracket import TaxBracket
from .payroll import Payroll, PayrollDeduction, PayrollAdjustment
from .workflow import Workflow, WorkflowStep

__all__ = [
    "TaxBracket",
    "Payroll", "PayrollDeduction", "PayrollAdjustment",
    "Workflow", "WorkflowStep",
]
