"""create stock ledger tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _table_exists(inspector, "stock_locations"):
        op.create_table(
            "stock_locations",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("description", sa.String(length=255), nullable=True),
            sa.Column("type", sa.String(length=20), nullable=False, server_default="PHYSICAL"),
            sa.Column("address", sa.String(length=255), nullable=True),
            sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_stock_locations_tenant_id", "stock_locations", ["tenant_id"], unique=False)
        op.create_index(
            "ix_stock_locations_tenant_default_created_at",
            "stock_locations",
            ["tenant_id", "is_default", "created_at"],
            unique=False,
        )
        op.create_index("ix_stock_locations_tenant_active", "stock_locations", ["tenant_id", "is_active"], unique=False)

    if not _table_exists(inspector, "products"):
        op.create_table(
            "products",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("product_code", sa.String(length=100), nullable=True),
            sa.Column("track_stock", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_products_tenant_id", "products", ["tenant_id"], unique=False)
        op.create_index("ix_products_tenant_name", "products", ["tenant_id", "name"], unique=False)

    if not _table_exists(inspector, "stock_entries"):
        op.create_table(
            "stock_entries",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.String(length=36), nullable=False),
            sa.Column("product_id", sa.String(length=36), nullable=False),
            sa.Column("location_id", sa.String(length=36), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("reserved", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("is_unlimited", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.ForeignKeyConstraint(["location_id"], ["stock_locations.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "tenant_id",
                "product_id",
                "location_id",
                name="uq_stock_entries_tenant_product_location",
            ),
        )
        op.create_index("ix_stock_entries_tenant_id", "stock_entries", ["tenant_id"], unique=False)
        op.create_index("ix_stock_entries_product_id", "stock_entries", ["product_id"], unique=False)
        op.create_index("ix_stock_entries_location_id", "stock_entries", ["location_id"], unique=False)
        op.create_index(
            "ix_stock_entries_tenant_location",
            "stock_entries",
            ["tenant_id", "location_id"],
            unique=False,
        )

    if not _table_exists(inspector, "stock_movements"):
        op.create_table(
            "stock_movements",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.String(length=36), nullable=False),
            sa.Column("product_id", sa.String(length=36), nullable=False),
            sa.Column("location_id", sa.String(length=36), nullable=False),
            sa.Column("from_location_id", sa.String(length=36), nullable=True),
            sa.Column("to_location_id", sa.String(length=36), nullable=True),
            sa.Column("movement_type", sa.String(length=20), nullable=False),
            sa.Column("quantity_change", sa.Integer(), nullable=False),
            sa.Column("reserved_change", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("quantity_before", sa.Integer(), nullable=False),
            sa.Column("quantity_after", sa.Integer(), nullable=False),
            sa.Column("reserved_before", sa.Integer(), nullable=False),
            sa.Column("reserved_after", sa.Integer(), nullable=False),
            sa.Column("entry_version", sa.Integer(), nullable=False),
            sa.Column("is_compensation", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("reason", sa.String(length=255), nullable=True),
            sa.Column("reference_id", sa.String(length=64), nullable=True),
            sa.Column("performed_by", sa.String(length=64), nullable=True),
            sa.Column("metadata_json", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "tenant_id",
                "product_id",
                "location_id",
                "entry_version",
                name="uq_stock_movements_key_entry_version",
            ),
        )
        op.create_index("ix_stock_movements_tenant_id", "stock_movements", ["tenant_id"], unique=False)
        op.create_index("ix_stock_movements_product_id", "stock_movements", ["product_id"], unique=False)
        op.create_index("ix_stock_movements_location_id", "stock_movements", ["location_id"], unique=False)
        op.create_index("ix_stock_movements_reference_id", "stock_movements", ["reference_id"], unique=False)
        op.create_index(
            "ix_stock_movements_tenant_created_at",
            "stock_movements",
            ["tenant_id", "created_at"],
            unique=False,
        )
        op.create_index(
            "ix_stock_movements_tenant_product_location_created_at",
            "stock_movements",
            ["tenant_id", "product_id", "location_id", "created_at"],
            unique=False,
        )

    if not _table_exists(inspector, "audit_logs"):
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("tenant_id", sa.String(length=36), nullable=False),
            sa.Column("actor_id", sa.String(length=64), nullable=True),
            sa.Column("action", sa.String(length=100), nullable=False),
            sa.Column("target_type", sa.String(length=100), nullable=False),
            sa.Column("target_id", sa.String(length=36), nullable=True),
            sa.Column("metadata_json", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_audit_logs_tenant_id", "audit_logs", ["tenant_id"], unique=False)
        op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"], unique=False)
        op.create_index("ix_audit_logs_target_id", "audit_logs", ["target_id"], unique=False)
        op.create_index("ix_audit_logs_tenant_created_at", "audit_logs", ["tenant_id", "created_at"], unique=False)
        op.create_index(
            "ix_audit_logs_tenant_action_created_at",
            "audit_logs",
            ["tenant_id", "action", "created_at"],
            unique=False,
        )


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("stock_movements")
    op.drop_table("stock_entries")
    op.drop_table("products")
    op.drop_table("stock_locations")
