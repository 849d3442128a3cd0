"""Hash-chained, append-only audit log model definition."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    CHAR,
    BigInteger,
    CheckConstraint,
    DateTime,
    Identity,
    Index,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
    desc,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from backend.db.base import Base
from backend.db.enums import AuditEventType, audit_event_type_enum

logger = logging.getLogger(__name__)


class AuditLog(Base):
    """Immutable lifecycle decision record linked to its predecessor by chain hash."""

    __tablename__ = "audit_log"
    __table_args__ = (
        PrimaryKeyConstraint("audit_log_id", name="pk_audit_log"),
        UniqueConstraint("audit_log_seq", name="uq_audit_log_seq"),
        UniqueConstraint("chain_hash", name="uq_audit_log_chain_hash"),
        CheckConstraint("length(btrim(entity_type)) > 0", name="ck_audit_log_entity_type_not_blank"),
        CheckConstraint("length(btrim(entity_id)) > 0", name="ck_audit_log_entity_id_not_blank"),
        CheckConstraint("integrity ~ '^[0-9a-f]{64}$'", name="ck_audit_log_integrity_hex"),
        CheckConstraint("chain_hash ~ '^[0-9a-f]{64}$'", name="ck_audit_log_chain_hash_hex"),
        Index("idx_audit_log_entity", "entity_type", "entity_id", desc("event_ts_utc")),
        Index("idx_audit_log_event_type_ts", "event_type", desc("event_ts_utc")),
        Index("idx_audit_log_correlation", "correlation_id"),
    )

    audit_log_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True)
    audit_log_seq: Mapped[int] = mapped_column(BigInteger, Identity(always=True), nullable=False)
    event_type: Mapped[AuditEventType] = mapped_column(audit_event_type_enum, nullable=False)
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[str | None] = mapped_column(Text)
    event_ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    before_state: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    after_state: Mapped[dict[str, Any] | None] = mapped_column(JSONB)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONB)
    correlation_id: Mapped[str] = mapped_column(Text, nullable=False)
    integrity: Mapped[str] = mapped_column(CHAR(64), nullable=False)
    chain_hash: Mapped[str] = mapped_column(CHAR(64), nullable=False)
