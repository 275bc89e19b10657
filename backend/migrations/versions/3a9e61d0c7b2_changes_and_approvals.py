"""users, products, changes, approval routing + change approvals, audit

Revision ID: 3a9e61d0c7b2
Revises:
Create Date: 2026-10-12 09:20:41.118204
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "3a9e61d0c7b2"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(bind, name: str, schema: str | None = None) -> bool:
    insp = sa.inspect(bind)
    return name in insp.get_table_names(schema=schema)


def _index_exists(bind, table: str, name: str, schema: str | None = None) -> bool:
    insp = sa.inspect(bind)
    for ix in insp.get_indexes(table_name=table, schema=schema):
        if ix.get("name") in {name, op.f(name)}:
            return True
    return False


def _ensure_index(bind, table: str, column: str, unique: bool = False) -> None:
    name = f"ix_{table}_{column}"
    if not _index_exists(bind, table, name, "public"):
        op.create_index(op.f(name), table, [column], unique=unique)


def upgrade() -> None:
    """Create tables/indexes if they don't already exist."""
    bind = op.get_bind()

    # ---- USERS ----
    if not _table_exists(bind, "users", "public"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("username", sa.String(length=128), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=True),
            sa.Column("role", sa.String(length=32), nullable=False, server_default="agent"),
            sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column("created_at", postgresql.TIMESTAMP(), nullable=False, server_default=sa.text("now()")),
        )
    _ensure_index(bind, "users", "id")
    _ensure_index(bind, "users", "username", unique=True)

    # ---- PRODUCTS ----
    if not _table_exists(bind, "products", "public"):
        op.create_table(
            "products",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("category", sa.String(length=128), nullable=True),
            sa.Column("description", sa.Text, nullable=True),
            sa.Column("owner", sa.String(length=255), nullable=True),
            sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column("created_at", postgresql.TIMESTAMP(), nullable=False, server_default=sa.text("now()")),
        )
    _ensure_index(bind, "products", "id")
    _ensure_index(bind, "products", "name", unique=True)

    # ---- CHANGES ----
    if not _table_exists(bind, "changes", "public"):
        op.create_table(
            "changes",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text, nullable=False),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
            sa.Column("priority", sa.String(length=32), nullable=False, server_default="medium"),
            sa.Column("category", sa.String(length=128), nullable=False),
            sa.Column("product_id", sa.Integer, sa.ForeignKey("products.id"), nullable=True),
            sa.Column("risk_level", sa.String(length=16), nullable=False, server_default="medium"),
            sa.Column("change_type", sa.String(length=16), nullable=False, server_default="normal"),
            sa.Column("requested_by", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
            sa.Column("approved_by", sa.String(length=255), nullable=True),
            sa.Column("planned_date", postgresql.TIMESTAMP(), nullable=True),
            sa.Column("start_date", postgresql.TIMESTAMP(), nullable=True),
            sa.Column("end_date", postgresql.TIMESTAMP(), nullable=True),
            sa.Column("rollback_plan", sa.Text, nullable=True),
            sa.Column("approval_token", sa.String(length=64), nullable=True, unique=True),
            sa.Column("is_overdue", sa.Boolean, nullable=False, server_default=sa.false()),
            sa.Column("created_at", postgresql.TIMESTAMP(), nullable=False, server_default=sa.text("now()")),
            sa.Column("updated_at", postgresql.TIMESTAMP(), nullable=False, server_default=sa.text("now()")),
        )
    for col in ("id", "status", "product_id", "requested_by"):
        _ensure_index(bind, "changes", col)

    # ---- CHANGE HISTORY ----
    if not _table_exists(bind, "change_history", "public"):
        op.create_table(
            "change_history",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("change_id", sa.Integer, sa.ForeignKey("changes.id"), nullable=False),
            sa.Column("action", sa.String(length=64), nullable=False),
            sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
            sa.Column("notes", sa.Text, nullable=True),
            sa.Column("previous_status", sa.String(length=32), nullable=True),
            sa.Column("new_status", sa.String(length=32), nullable=True),
            sa.Column("created_at", postgresql.TIMESTAMP(), nullable=False, server_default=sa.text("now()")),
        )
    _ensure_index(bind, "change_history", "change_id")

    # ---- APPROVAL ROUTING ----
    if not _table_exists(bind, "approval_routing", "public"):
        op.create_table(
            "approval_routing",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("product_id", sa.Integer, sa.ForeignKey("products.id"), nullable=False),
            sa.Column("risk_level", sa.String(length=16), nullable=False),       # low | medium | high
            sa.Column("approver_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
            sa.Column("approval_level", sa.Integer, nullable=False),
            sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
            sa.Column("created_at", postgresql.TIMESTAMP(), nullable=False, server_default=sa.text("now()")),
            sa.Column("updated_at", postgresql.TIMESTAMP(), nullable=False, server_default=sa.text("now()")),
        )
    _ensure_index(bind, "approval_routing", "product_id")

    # ---- CHANGE APPROVALS ----
    if not _table_exists(bind, "change_approvals", "public"):
        op.create_table(
            "change_approvals",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("change_id", sa.Integer, sa.ForeignKey("changes.id"), nullable=False),
            sa.Column("approver_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
            sa.Column("approval_level", sa.Integer, nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("approved_at", postgresql.TIMESTAMP(), nullable=True),
            sa.Column("comments", sa.Text, nullable=True),
            sa.Column("created_at", postgresql.TIMESTAMP(), nullable=False, server_default=sa.text("now()")),
            sa.Column("updated_at", postgresql.TIMESTAMP(), nullable=False, server_default=sa.text("now()")),
            sa.UniqueConstraint("change_id", "approval_level", name="uq_change_approvals_change_level"),
        )
    _ensure_index(bind, "change_approvals", "change_id")
    _ensure_index(bind, "change_approvals", "approver_id")

    # ---- AUDIT LOG ----
    if not _table_exists(bind, "audit_log", "public"):
        op.create_table(
            "audit_log",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("action", sa.String(length=128), nullable=True),
            sa.Column("entity_type", sa.String(length=64), nullable=True),
            sa.Column("entity_id", sa.Integer, nullable=True),
            sa.Column("actor", sa.String(length=255), nullable=True),
            sa.Column("details", postgresql.JSON(astext_type=sa.Text()), nullable=True),
            sa.Column("created_at", postgresql.TIMESTAMP(), nullable=False, server_default=sa.text("now()")),
        )
    _ensure_index(bind, "audit_log", "action")
    _ensure_index(bind, "audit_log", "entity_id")


def downgrade() -> None:
    """Drop the same objects (guarded) in reverse dependency order."""
    for table in ("audit_log", "change_approvals", "approval_routing", "change_history",
                  "changes", "products", "users"):
        op.execute(f"DROP TABLE IF EXISTS public.{table} CASCADE")
