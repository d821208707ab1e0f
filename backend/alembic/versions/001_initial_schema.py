"""initial schema: organizations, accounts, otps, voucher orders and vouchers

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="ACTIVE"),
        sa.Column("total_vouchers", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("alloted_vouchers", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("status IN ('ACTIVE', 'INACTIVE', 'DELETED')", name="chk_organization_status"),
        sa.CheckConstraint("alloted_vouchers >= 0", name="chk_organization_alloted_non_negative"),
        sa.CheckConstraint("alloted_vouchers <= total_vouchers", name="chk_organization_quota"),
    )
    op.create_index("ix_organizations_status", "organizations", ["status"])

    op.create_table(
        "accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("identifier", sa.String(length=255), nullable=False),
        sa.Column("identifier_type", sa.String(length=20), nullable=False),
        sa.Column("account_type", sa.String(length=20), nullable=False),
        sa.Column(
            "organization_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("organizations.id"),
            nullable=True,
        ),
        sa.Column("pathology_lab_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("identifier", "identifier_type", name="uq_account_identifier"),
        sa.CheckConstraint("identifier_type IN ('MOBILE', 'EMAIL')", name="chk_account_identifier_type"),
        sa.CheckConstraint("account_type IN ('ORGANIZATION', 'PATHOLOGY_LAB')", name="chk_account_type"),
    )
    op.create_index("ix_accounts_identifier", "accounts", ["identifier"])
    op.create_index("ix_accounts_organization_id", "accounts", ["organization_id"])
    op.create_index("ix_accounts_pathology_lab_id", "accounts", ["pathology_lab_id"])

    op.create_table(
        "otps",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("identifier", sa.String(length=255), nullable=False),
        sa.Column("identifier_type", sa.String(length=20), nullable=False),
        sa.Column("otp", sa.String(length=12), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="UNVERIFIED"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("verification_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("valid_till", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("status IN ('UNVERIFIED', 'VERIFIED', 'INVALID')", name="chk_otp_status"),
    )
    op.create_index("idx_otps_identifier_created", "otps", ["identifier", "created_at"])

    op.create_table(
        "voucher_orders",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "organization_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("organizations.id"),
            nullable=False,
        ),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="CREATED"),
        sa.Column("uploaded_file", sa.String(length=1024), nullable=False),
        sa.Column("voucher_count", sa.Integer(), nullable=False),
        sa.Column("created_by", postgresql.UUID(as_uuid=True), sa.ForeignKey("accounts.id"), nullable=False),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('CREATED', 'PROCESSING', 'PROCESSED')",
            name="chk_voucher_order_status",
        ),
        sa.CheckConstraint("voucher_count > 0", name="chk_voucher_order_count_positive"),
    )
    op.create_index("ix_voucher_orders_organization_id", "voucher_orders", ["organization_id"])
    op.create_index("ix_voucher_orders_status", "voucher_orders", ["status"])
    op.create_index("ix_voucher_orders_created_by", "voucher_orders", ["created_by"])

    op.create_table(
        "vouchers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("voucher_code", sa.String(length=16), nullable=False),
        sa.Column(
            "order_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("voucher_orders.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_name", sa.String(length=40), nullable=False),
        sa.Column("user_mobile", sa.String(length=10), nullable=False),
        sa.Column("user_govt_id_type", sa.String(length=30), nullable=False),
        sa.Column("user_govt_id", sa.String(length=40), nullable=False),
        sa.Column("user_emp_id", sa.String(length=40), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="ALLOTTED"),
        sa.Column("issuer_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_failure_reason", sa.String(length=512), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status IN ('ALLOTTED', 'PROCESSED', 'FAILED')", name="chk_voucher_status"),
    )
    op.create_index("ix_vouchers_voucher_code", "vouchers", ["voucher_code"], unique=True)
    op.create_index("ix_vouchers_order_id", "vouchers", ["order_id"])
    op.create_index("ix_vouchers_status", "vouchers", ["status"])


def downgrade() -> None:
    op.drop_index("ix_vouchers_status", table_name="vouchers")
    op.drop_index("ix_vouchers_order_id", table_name="vouchers")
    op.drop_index("ix_vouchers_voucher_code", table_name="vouchers")
    op.drop_table("vouchers")

    op.drop_index("ix_voucher_orders_created_by", table_name="voucher_orders")
    op.drop_index("ix_voucher_orders_status", table_name="voucher_orders")
    op.drop_index("ix_voucher_orders_organization_id", table_name="voucher_orders")
    op.drop_table("voucher_orders")

    op.drop_index("idx_otps_identifier_created", table_name="otps")
    op.drop_table("otps")

    op.drop_index("ix_accounts_pathology_lab_id", table_name="accounts")
    op.drop_index("ix_accounts_organization_id", table_name="accounts")
    op.drop_index("ix_accounts_identifier", table_name="accounts")
    op.drop_table("accounts")

    op.drop_index("ix_organizations_status", table_name="organizations")
    op.drop_table("organizations")
