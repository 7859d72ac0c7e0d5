"""workflow payroll generation tracking

Revision ID: 5d2e8b4c1a37
Revises: 3f1a9c2e7b10
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5d2e8b4c1a37'
down_revision: Union[str, Sequence[str], None] = '3f1a9c2e7b10'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        'workflows',
        sa.Column('payroll_generated', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.add_column('workflows', sa.Column('generated_at', sa.DateTime(), nullable=True))
    op.add_column('workflows', sa.Column('generated_by', sa.Integer(), nullable=True))
    op.create_foreign_key(
        'fk_workflows_generated_by_users', 'workflows', 'users', ['generated_by'], ['id'],
    )
    op.alter_column('workflows', 'payroll_generated', server_default=None)


def downgrade() -> None:
    op.drop_constraint('fk_workflows_generated_by_users', 'workflows', type_='foreignkey')
    op.drop_column('workflows', 'generated_by')
    op.drop_column('workflows', 'generated_at')
    op.drop_column('workflows', 'payroll_generated')
