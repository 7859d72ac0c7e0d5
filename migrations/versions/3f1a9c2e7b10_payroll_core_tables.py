"""payroll core tables (directory, tax brackets, payrolls, workflows)

Revision ID: 3f1a9c2e7b10
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f1a9c2e7b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

CURRENCIES = ('MWK', 'USD', 'EUR', 'GBP')


def _money(precision=14):
    return sa.Numeric(precision, 2)


def upgrade() -> None:
    # shared by grades and payrolls; created once up front
    sa.Enum(*CURRENCIES, name='currency_enum').create(op.get_bind(), checkfirst=True)
    currency_enum = postgresql.ENUM(*CURRENCIES, name='currency_enum', create_type=False)

    # ---- directory ----
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'roles',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(length=50), nullable=False, unique=True),
    )
    op.create_table(
        'user_roles',
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('role_id', sa.Integer(), sa.ForeignKey('roles.id', ondelete='CASCADE'), primary_key=True),
    )

    op.create_table(
        'departments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(length=20), nullable=False, unique=True),
        sa.Column('name', sa.String(length=120), nullable=False, unique=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'grades',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(length=10), nullable=False, unique=True),
        sa.Column('name', sa.String(length=60), nullable=False, unique=True),
        sa.Column('level', sa.Integer(), nullable=False),
        sa.Column('base_salary', _money(), nullable=False),
        sa.Column('currency', currency_enum, nullable=False),
        sa.Column('pension_percent', sa.Numeric(5, 2), nullable=False),
        sa.Column('overtime_rate', _money(12), nullable=False),
        sa.Column('overtime_multiplier', sa.Numeric(4, 2), nullable=False),
        sa.Column('allowance_transport', _money(12), nullable=False),
        sa.Column('allowance_housing', _money(12), nullable=False),
        sa.Column('allowance_medical', _money(12), nullable=False),
        sa.Column('allowance_meals', _money(12), nullable=False),
        sa.Column('allowance_communication', _money(12), nullable=False),
        sa.Column('allowance_other', _money(12), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'employees',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('department_id', sa.Integer(), sa.ForeignKey('departments.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('grade_id', sa.Integer(), sa.ForeignKey('grades.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True, unique=True),
        sa.Column('code', sa.String(length=32), nullable=False, unique=True),
        sa.Column('email', sa.String(length=255), nullable=False, unique=True),
        sa.Column('first_name', sa.String(length=80), nullable=False),
        sa.Column('last_name', sa.String(length=80), nullable=True),
        sa.Column('current_salary', _money(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_emp_dept_id', 'employees', ['department_id'])
    op.create_index('ix_emp_status_active', 'employees', ['status', 'is_active'])

    op.create_table(
        'employee_overtime',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id', ondelete='CASCADE'), nullable=False),
        sa.Column('month', sa.String(length=7), nullable=False),
        sa.Column('hours', sa.Numeric(6, 2), nullable=False),
        sa.Column('rate', _money(12), nullable=False),
        sa.Column('amount', _money(), nullable=False),
        sa.Column('description', sa.String(length=500), nullable=True),
        sa.Column('status', sa.Enum('pending', 'approved', 'rejected', 'paid', name='overtime_status_enum'), nullable=False),
        sa.Column('approved_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('employee_id', 'month', name='uq_overtime_employee_month'),
    )
    op.create_index('ix_employee_overtime_employee_id', 'employee_overtime', ['employee_id'])

    # ---- tax configuration ----
    op.create_table(
        'tax_brackets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('bracket_name', sa.String(length=80), nullable=False),
        sa.Column('min_amount', sa.Numeric(16, 2), nullable=False),
        sa.Column('max_amount', sa.Numeric(16, 2), nullable=True),
        sa.Column('tax_rate', sa.Numeric(5, 2), nullable=False),
        sa.Column('country', sa.String(length=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('effective_from', sa.Date(), nullable=False),
        sa.Column('effective_to', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index(
        'ix_tax_brackets_resolve', 'tax_brackets',
        ['country', 'currency', 'is_active', 'effective_from', 'effective_to'],
    )

    # ---- payroll records ----
    op.create_table(
        'payrolls',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('employee_id', sa.Integer(), sa.ForeignKey('employees.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('payroll_month', sa.String(length=7), nullable=False),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('period_end', sa.Date(), nullable=False),
        sa.Column('working_days', sa.Integer(), nullable=False),
        sa.Column('days_worked', sa.Numeric(5, 2), nullable=False),
        sa.Column('base_salary', _money(), nullable=False),
        sa.Column('prorated_salary', _money(), nullable=False),
        sa.Column('allowance_transport', _money(12), nullable=False),
        sa.Column('allowance_housing', _money(12), nullable=False),
        sa.Column('allowance_medical', _money(12), nullable=False),
        sa.Column('allowance_meals', _money(12), nullable=False),
        sa.Column('allowance_communication', _money(12), nullable=False),
        sa.Column('allowance_other', _money(12), nullable=False),
        sa.Column('allowances_total', _money(), nullable=False),
        sa.Column('overtime_hours', sa.Numeric(6, 2), nullable=False),
        sa.Column('overtime_rate', _money(12), nullable=False),
        sa.Column('overtime_amount', _money(), nullable=False),
        sa.Column('bonus_performance', _money(12), nullable=False),
        sa.Column('bonus_annual', _money(12), nullable=False),
        sa.Column('bonus_other', _money(12), nullable=False),
        sa.Column('bonuses_total', _money(), nullable=False),
        sa.Column('gross_pay', _money(), nullable=False),
        sa.Column('tax_rate', sa.Numeric(6, 2), nullable=False),
        sa.Column('tax_amount', _money(), nullable=False),
        sa.Column('pension_rate', sa.Numeric(5, 2), nullable=False),
        sa.Column('pension_amount', _money(), nullable=False),
        sa.Column('deductions_total', _money(), nullable=False),
        sa.Column('net_pay', _money(), nullable=False),
        sa.Column('payment_status', sa.Enum('pending', 'approved', 'processing', 'paid', 'failed', name='payment_status_enum'), nullable=False),
        sa.Column('payment_method', sa.Enum('bank_transfer', 'mobile_money', 'cash', 'cheque', name='payment_method_enum'), nullable=False),
        sa.Column('payment_reference', sa.String(length=120), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('payment_batch_id', sa.String(length=64), nullable=True),
        sa.Column('hr_status', sa.Enum('pending', 'approved', 'rejected', name='hr_approval_enum'), nullable=False),
        sa.Column('hr_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('hr_at', sa.DateTime(), nullable=True),
        sa.Column('hr_notes', sa.String(length=500), nullable=True),
        sa.Column('finance_status', sa.Enum('pending', 'approved', 'rejected', name='finance_approval_enum'), nullable=False),
        sa.Column('finance_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('finance_at', sa.DateTime(), nullable=True),
        sa.Column('finance_notes', sa.String(length=500), nullable=True),
        sa.Column('payslip_generated', sa.Boolean(), nullable=False),
        sa.Column('payslip_path', sa.String(length=255), nullable=True),
        sa.Column('payslip_generated_at', sa.DateTime(), nullable=True),
        sa.Column('processed_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('currency', currency_enum, nullable=False),
        sa.Column('exchange_rate', sa.Numeric(12, 6), nullable=False),
        sa.Column('notes', sa.String(length=500), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('computed_on', sa.Date(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('employee_id', 'payroll_month', name='uq_payroll_employee_month'),
    )
    op.create_index('ix_payrolls_month', 'payrolls', ['payroll_month'])
    op.create_index('ix_payrolls_payment_status', 'payrolls', ['payment_status'])
    op.create_index('ix_payrolls_approvals', 'payrolls', ['hr_status', 'finance_status'])

    op.create_table(
        'payroll_deductions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('payroll_id', sa.Integer(), sa.ForeignKey('payrolls.id', ondelete='CASCADE'), nullable=False),
        sa.Column('kind', sa.Enum('loan', 'other', name='payroll_deduction_kind_enum'), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=True),
        sa.Column('amount', _money(), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
    )
    op.create_index('ix_payroll_deductions_payroll_id', 'payroll_deductions', ['payroll_id'])

    op.create_table(
        'payroll_adjustments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('payroll_id', sa.Integer(), sa.ForeignKey('payrolls.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.Enum('addition', 'deduction', 'adjustment', name='adjustment_type_enum'), nullable=False),
        sa.Column('category', sa.Enum('salary', 'allowance', 'bonus', 'tax', 'other', 'edit', name='adjustment_category_enum'), nullable=False),
        sa.Column('duration', sa.Enum('temporary', 'permanent', name='adjustment_duration_enum'), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=True),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('number_of_months', sa.Integer(), nullable=True),
        sa.Column('amount', _money(), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=False),
        sa.Column('changes', sa.JSON(), nullable=True),
        sa.Column('applied_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('applied_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_payroll_adjustments_payroll_id', 'payroll_adjustments', ['payroll_id'])

    # ---- month workflow ----
    op.create_table(
        'workflows',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('month', sa.String(length=7), nullable=False, unique=True),
        sa.Column('payroll_id', sa.Integer(), sa.ForeignKey('payrolls.id', ondelete='SET NULL'), nullable=True),
        sa.Column('initiated_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('initiated_at', sa.DateTime(), nullable=True),
        sa.Column('current_step', sa.Integer(), nullable=False),
        sa.Column('status', sa.Enum('pending', 'in_progress', 'completed', 'rejected', name='workflow_status_enum'), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_workflows_status', 'workflows', ['status'])

    op.create_table(
        'workflow_steps',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('workflow_id', sa.Integer(), sa.ForeignKey('workflows.id', ondelete='CASCADE'), nullable=False),
        sa.Column('step_number', sa.Integer(), nullable=False),
        sa.Column('role', sa.Enum('hr', 'employee', 'admin', name='workflow_role_enum'), nullable=False),
        sa.Column('approver_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('status', sa.Enum('waiting', 'pending', 'approved', 'rejected', name='workflow_step_status_enum'), nullable=False),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('notes', sa.String(length=500), nullable=True),
        sa.UniqueConstraint('workflow_id', 'step_number', name='uq_workflow_step_number'),
    )
    op.create_index('ix_workflow_steps_workflow_id', 'workflow_steps', ['workflow_id'])


def downgrade() -> None:
    for table in (
        'workflow_steps', 'workflows',
        'payroll_adjustments', 'payroll_deductions', 'payrolls',
        'tax_brackets',
        'employee_overtime', 'employees', 'grades', 'departments',
        'user_roles', 'roles', 'users',
    ):
        op.drop_table(table)

    # Drop enum types if present
    bind = op.get_bind()
    for name in (
        'workflow_step_status_enum', 'workflow_role_enum', 'workflow_status_enum',
        'adjustment_duration_enum', 'adjustment_category_enum', 'adjustment_type_enum',
        'payroll_deduction_kind_enum', 'finance_approval_enum', 'hr_approval_enum',
        'payment_method_enum', 'payment_status_enum', 'overtime_status_enum', 'currency_enum',
    ):
        try:
            sa.Enum(name=name).drop(bind, checkfirst=True)
        except Exception:
            pass
