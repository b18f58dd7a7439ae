"""create payments and purchases tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00
"""
from alembic import op
import sqlalchemy as sa


revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

payment_status = sa.Enum("PENDING", "COMPLETED", "FAILED", name="payment_status")


def upgrade() -> None:
    op.create_table(
        "payments",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("course_id", sa.String(length=36), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", payment_status, nullable=False, server_default="PENDING"),
        sa.Column("method", sa.String(length=32), nullable=False, server_default="payhere"),
        sa.Column("gateway_payment_id", sa.String(length=64), nullable=True),
        sa.Column("gateway_status_code", sa.String(length=8), nullable=True),
        sa.Column("gateway_status_message", sa.String(length=255), nullable=True),
        sa.Column("gateway_method", sa.String(length=32), nullable=True),
        sa.Column("access_granted_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_payments_id", "payments", ["id"])
    op.create_index("ix_payments_user_id", "payments", ["user_id"])
    op.create_index("ix_payments_course_id", "payments", ["course_id"])

    op.create_table(
        "purchases",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("course_id", sa.String(length=36), nullable=False),
        sa.Column("payment_id", sa.String(length=36), nullable=True),
        sa.Column("access_granted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("purchase_date", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "course_id", name="uq_purchases_user_course"),
    )
    op.create_index("ix_purchases_id", "purchases", ["id"])


def downgrade() -> None:
    op.drop_index("ix_purchases_id", table_name="purchases")
    op.drop_table("purchases")
    op.drop_index("ix_payments_course_id", table_name="payments")
    op.drop_index("ix_payments_user_id", table_name="payments")
    op.drop_index("ix_payments_id", table_name="payments")
    op.drop_table("payments")
    payment_status.drop(op.get_bind(), checkfirst=True)
