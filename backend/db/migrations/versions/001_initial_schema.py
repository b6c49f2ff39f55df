"""
Initial schema - all 6 tables

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # 1. Stores
    op.create_table(
        "stores",
        sa.Column("store_code", sa.String(64), primary_key=True),
        sa.Column("region_code", sa.String(8), nullable=False),
        sa.Column("name", sa.String(255)),
        sa.Column("billing_subdomain_stg", sa.String(128)),
        sa.Column("billing_subdomain_prod", sa.String(128)),
        sa.Column("billing_api_key_stg_encrypted", sa.Text),
        sa.Column("billing_api_key_prod_encrypted", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )

    # 2. Promotable entities
    op.create_table(
        "promotable_entities",
        sa.Column("store_code", sa.String(64), sa.ForeignKey("stores.store_code"), primary_key=True),
        sa.Column("entity_code", sa.String(64), primary_key=True),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("status_id", sa.SmallInteger, nullable=False, server_default="1"),
        sa.Column("name", sa.String(255)),
        sa.Column("plan_code", sa.String(64)),
        sa.Column("payload", sa.JSON, nullable=False),
        sa.Column("draft_data", sa.JSON),
        sa.Column("remote_id", sa.String(128)),
        sa.Column("ci_build_key", sa.String(128), unique=True),
        sa.Column("created_by", sa.String(255)),
        sa.Column("last_modified_by", sa.String(255)),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("deleted_at", sa.DateTime),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.CheckConstraint(
            "entity_type IN ('plan', 'offer', 'retention_offer', 'extension_offer')",
            name="ck_entity_type",
        ),
    )
    op.create_index("ix_entities_store_status", "promotable_entities", ["store_code", "status_id"])
    op.create_index("ix_entities_plan_code", "promotable_entities", ["plan_code"])

    # 3. Entity history
    op.create_table(
        "entity_history",
        sa.Column("event_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("store_code", sa.String(64), nullable=False),
        sa.Column("entity_code", sa.String(64), nullable=False),
        sa.Column("from_status", sa.SmallInteger),
        sa.Column("to_status", sa.SmallInteger, nullable=False),
        sa.Column("actor", sa.String(255)),
        sa.Column("message", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(
            ["store_code", "entity_code"],
            ["promotable_entities.store_code", "promotable_entities.entity_code"],
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_entity_history_entity", "entity_history", ["store_code", "entity_code", "created_at"])

    # 4. Versioned configs
    op.create_table(
        "versioned_configs",
        sa.Column("name", sa.String(128), primary_key=True),
        sa.Column("status_id", sa.SmallInteger, nullable=False, server_default="0"),
        sa.Column("stg_rollback_version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("prod_rollback_version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(255)),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("status_id IN (0, 1, 2)", name="ck_versioned_config_status"),
    )

    # 5. Remote locks
    op.create_table(
        "remote_locks",
        sa.Column("system", sa.String(32), primary_key=True),
        sa.Column("env", sa.String(10), primary_key=True),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )

    # 6. Pending operations
    op.create_table(
        "pending_operations",
        sa.Column("key", sa.String(128), primary_key=True),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    tables = [
        "pending_operations",
        "remote_locks",
        "versioned_configs",
        "entity_history",
        "promotable_entities",
        "stores",
    ]
    for table in tables:
        op.drop_table(table)
