"""
OfferOps Database Models

Tables:
  Business state (owned by the persistence layer):
  1. stores               - Storefronts with per-environment billing credentials
  2. promotable_entities  - Plans and offers moving draft -> staging -> production
  3. entity_history       - Audit trail of every status transition
  4. versioned_configs    - Rollback record for externally-versioned config documents

  Coordination (ephemeral, never authoritative):
  5. remote_locks         - Row-backed mutex per (remote system, environment)
  6. pending_operations   - In-flight long-running actions per entity key
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    TypeDecorator,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


from sqlalchemy.orm import relationship

from db.session import Base

# ─── 1. Stores ──────────────────────────────────────────────────────────────


class Store(Base):
    __tablename__ = "stores"

    store_code = Column(String(64), primary_key=True)
    region_code = Column(String(8), nullable=False)
    name = Column(String(255), nullable=True)
    billing_subdomain_stg = Column(String(128), nullable=True)
    billing_subdomain_prod = Column(String(128), nullable=True)
    billing_api_key_stg_encrypted = Column(Text, nullable=True)
    billing_api_key_prod_encrypted = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    entities = relationship("PromotableEntity", back_populates="store")


# ─── 2. Promotable Entities ─────────────────────────────────────────────────


class PromotableEntity(Base):
    """
    One row per plan / offer variant.

    ``version`` is the optimistic-lock column: SQLAlchemy adds it to the
    UPDATE's WHERE clause and raises ``StaleDataError`` when another writer
    committed first.
    """

    __tablename__ = "promotable_entities"

    store_code = Column(String(64), ForeignKey("stores.store_code"), primary_key=True)
    entity_code = Column(String(64), primary_key=True)
    entity_type = Column(String(32), nullable=False)
    status_id = Column(SmallInteger, nullable=False, default=1)
    name = Column(String(255), nullable=True)
    plan_code = Column(String(64), nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    draft_data = Column(JSON, nullable=True)
    remote_id = Column(String(128), nullable=True)
    ci_build_key = Column(String(128), nullable=True, unique=True)
    created_by = Column(String(255), nullable=True)
    last_modified_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "entity_type IN ('plan', 'offer', 'retention_offer', 'extension_offer')",
            name="ck_entity_type",
        ),
        Index("ix_entities_store_status", "store_code", "status_id"),
        Index("ix_entities_plan_code", "plan_code"),
    )

    store = relationship("Store", back_populates="entities", lazy="joined")

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


# ─── 3. Entity History ──────────────────────────────────────────────────────


class EntityHistory(Base):
    __tablename__ = "entity_history"

    event_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    store_code = Column(String(64), nullable=False)
    entity_code = Column(String(64), nullable=False)
    from_status = Column(SmallInteger, nullable=True)
    to_status = Column(SmallInteger, nullable=False)
    actor = Column(String(255), nullable=True)
    message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        ForeignKeyConstraint(
            ["store_code", "entity_code"],
            ["promotable_entities.store_code", "promotable_entities.entity_code"],
            ondelete="CASCADE",
        ),
        Index("ix_entity_history_entity", "store_code", "entity_code", "created_at"),
    )


# ─── 4. Versioned Configs ───────────────────────────────────────────────────


class VersionedConfig(Base):
    __tablename__ = "versioned_configs"

    name = Column(String(128), primary_key=True)
    status_id = Column(SmallInteger, nullable=False, default=0)
    stg_rollback_version = Column(Integer, nullable=False, default=0)
    prod_rollback_version = Column(Integer, nullable=False, default=0)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("status_id IN (0, 1, 2)", name="ck_versioned_config_status"),
    )


# ─── 5. Remote Locks ────────────────────────────────────────────────────────


class RemoteLock(Base):
    __tablename__ = "remote_locks"

    system = Column(String(32), primary_key=True)
    env = Column(String(10), primary_key=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


# ─── 6. Pending Operations ──────────────────────────────────────────────────


class PendingOperation(Base):
    __tablename__ = "pending_operations"

    key = Column(String(128), primary_key=True)
    action = Column(String(64), nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
