"""create stock ledger schema

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


def _created_at_column() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _table_exists(inspector, "users"):
        op.create_table(
            "users",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("username", sa.String(length=50), nullable=False),
            sa.Column("hashed_password", sa.String(length=255), nullable=False),
            sa.Column("full_name", sa.String(length=100), nullable=True),
            sa.Column("role", sa.String(length=20), nullable=False, server_default="staff"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.CheckConstraint("role IN ('admin', 'staff', 'viewer')", name="ck_users_role"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_users_email", "users", ["email"], unique=True)
        op.create_index("ix_users_username", "users", ["username"], unique=True)
        op.create_index("ux_users_email_lower", "users", [sa.text("lower(email)")], unique=True)
        op.create_index("ux_users_username_lower", "users", [sa.text("lower(username)")], unique=True)

    if not _table_exists(inspector, "refresh_tokens"):
        op.create_table(
            "refresh_tokens",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("user_id", sa.String(length=36), nullable=False),
            sa.Column("token_jti", sa.String(length=36), nullable=False),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("revoked_reason", sa.String(length=20), nullable=True),
            sa.Column("replaced_by_jti", sa.String(length=36), nullable=True),
            sa.Column("created_by_ip", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_refresh_tokens_user_id", "refresh_tokens", ["user_id"], unique=False)
        op.create_index("ix_refresh_tokens_token_jti", "refresh_tokens", ["token_jti"], unique=True)
        op.create_index(
            "ix_refresh_tokens_user_revoked_expires",
            "refresh_tokens",
            ["user_id", "revoked_at", "expires_at"],
            unique=False,
        )

    if not _table_exists(inspector, "audit_logs"):
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("actor_user_id", sa.String(length=36), nullable=True),
            sa.Column("action", sa.String(length=100), nullable=False),
            sa.Column("target_type", sa.String(length=100), nullable=False),
            sa.Column("target_id", sa.String(length=36), nullable=True),
            sa.Column("metadata_json", sa.JSON(), nullable=True),
            _created_at_column(),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_audit_logs_actor_user_id", "audit_logs", ["actor_user_id"], unique=False)
        op.create_index("ix_audit_logs_target_id", "audit_logs", ["target_id"], unique=False)
        op.create_index(
            "ix_audit_logs_action_created_at",
            "audit_logs",
            ["action", "created_at"],
            unique=False,
        )
        op.create_index(
            "ix_audit_logs_target_created_at",
            "audit_logs",
            ["target_type", "target_id", "created_at"],
            unique=False,
        )

    if not _table_exists(inspector, "products"):
        op.create_table(
            "products",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("sku", sa.String(length=100), nullable=False),
            sa.Column("unit", sa.String(length=30), nullable=True),
            sa.Column("category", sa.String(length=100), nullable=True),
            sa.Column("initial_stock", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("current_stock", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("min_stock", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("max_stock", sa.Integer(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            _created_at_column(),
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.func.now(),
            ),
            sa.CheckConstraint("current_stock >= 0", name="ck_products_current_stock_non_negative"),
            sa.CheckConstraint("initial_stock >= 0", name="ck_products_initial_stock_non_negative"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_products_created_at", "products", ["created_at"], unique=False)
        op.create_index(
            "ix_products_current_stock_min_stock",
            "products",
            ["current_stock", "min_stock"],
            unique=False,
        )
        op.create_index("ux_products_sku_lower", "products", [sa.text("lower(sku)")], unique=True)

    if not _table_exists(inspector, "stock_movements"):
        op.create_table(
            "stock_movements",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("product_id", sa.String(length=36), nullable=False),
            sa.Column("type", sa.String(length=3), nullable=False),
            sa.Column("quantity", sa.Integer(), nullable=False),
            sa.Column("reason", sa.String(length=30), nullable=False),
            sa.Column("reference", sa.String(length=120), nullable=True),
            sa.Column("notes", sa.String(length=500), nullable=True),
            sa.Column("balance_after", sa.Integer(), nullable=False),
            sa.Column("reversal_of_id", sa.String(length=36), nullable=True),
            sa.Column("idempotency_key", sa.String(length=120), nullable=True),
            sa.Column("created_by_user_id", sa.String(length=36), nullable=True),
            _created_at_column(),
            sa.CheckConstraint("quantity > 0", name="ck_stock_movements_quantity_positive"),
            sa.CheckConstraint("type IN ('in', 'out')", name="ck_stock_movements_type"),
            sa.CheckConstraint(
                "balance_after >= 0",
                name="ck_stock_movements_balance_after_non_negative",
            ),
            sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
            sa.ForeignKeyConstraint(["reversal_of_id"], ["stock_movements.id"]),
            sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("reversal_of_id"),
        )
        op.create_index("ix_stock_movements_product_id", "stock_movements", ["product_id"], unique=False)
        op.create_index(
            "ix_stock_movements_created_by_user_id",
            "stock_movements",
            ["created_by_user_id"],
            unique=False,
        )
        op.create_index("ix_stock_movements_created_at", "stock_movements", ["created_at"], unique=False)
        op.create_index(
            "ix_stock_movements_product_created_at",
            "stock_movements",
            ["product_id", "created_at"],
            unique=False,
        )
        op.create_index(
            "ix_stock_movements_type_created_at",
            "stock_movements",
            ["type", "created_at"],
            unique=False,
        )

    if not _table_exists(inspector, "movement_idempotency_keys"):
        op.create_table(
            "movement_idempotency_keys",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("product_id", sa.String(length=36), nullable=False),
            sa.Column("idempotency_key", sa.String(length=120), nullable=False),
            sa.Column("movement_id", sa.String(length=36), nullable=False),
            sa.Column("request_hash", sa.String(length=64), nullable=False),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
            sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
            sa.ForeignKeyConstraint(["movement_id"], ["stock_movements.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "product_id",
                "idempotency_key",
                name="uq_movement_idempotency_keys_product_key",
            ),
        )
        op.create_index(
            "ix_movement_idempotency_keys_expires_at",
            "movement_idempotency_keys",
            ["expires_at"],
            unique=False,
        )


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    # Children first.
    for table_name in (
        "movement_idempotency_keys",
        "stock_movements",
        "products",
        "audit_logs",
        "refresh_tokens",
        "users",
    ):
        if _table_exists(inspector, table_name):
            op.drop_table(table_name)
