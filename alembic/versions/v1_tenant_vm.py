"""Add tenantvm table

Revision ID: v1_tenant_vm
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

revision = "v1_tenant_vm"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tenantvm",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("has_access", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("status_reason", sa.Text(), nullable=True),
        sa.Column("subdomain", sa.String(63), nullable=True),
        sa.Column("ip", sa.String(15), nullable=True),
        sa.Column("provider_instance_id", sa.String(64), nullable=True),
        sa.Column("dns_record_id", sa.String(64), nullable=True),
        sa.Column("auth_secret_hash", sa.String(128), nullable=True),
        sa.Column("public_key", sa.Text(), nullable=True),
        sa.Column("provisioned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("health_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_health_check_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_tenantvm_id", "tenantvm", ["id"])
    op.create_index("ix_tenantvm_tenant_id", "tenantvm", ["tenant_id"], unique=True)
    op.create_index("ix_tenantvm_subdomain", "tenantvm", ["subdomain"], unique=True)
    op.create_index("ix_tenantvm_status", "tenantvm", ["status"])


def downgrade() -> None:
    op.drop_index("ix_tenantvm_status", table_name="tenantvm")
    op.drop_index("ix_tenantvm_subdomain", table_name="tenantvm")
    op.drop_index("ix_tenantvm_tenant_id", table_name="tenantvm")
    op.drop_index("ix_tenantvm_id", table_name="tenantvm")
    op.drop_table("tenantvm")
