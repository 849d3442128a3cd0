"""Hash-chained audit trail sink for lifecycle decisions."""

from __future__ import annotations

from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any, Mapping, Optional, Sequence
from uuid import UUID

from backend.db.enums import AuditEventType
from strategy_engine.common import (
    EngineClock,
    EngineDatabase,
    canonical_json,
    deterministic_uuid,
    load_json,
    parse_utc,
    stable_hash,
)

logger = logging.getLogger(__name__)

DEFAULT_QUERY_LIMIT = 100


@dataclass(frozen=True)
class AuditEntry:
    """One audit event prior to persistence."""

    event_type: AuditEventType
    entity_type: str
    entity_id: str
    user_id: str | None = None
    before_state: Mapping[str, Any] | None = None
    after_state: Mapping[str, Any] | None = None
    metadata: Mapping[str, Any] | None = None
    correlation_id: str | None = None


@dataclass(frozen=True)
class AuditRecord:
    """Persisted audit row."""

    audit_log_id: UUID
    event_type: str
    entity_type: str
    entity_id: str
    user_id: str | None
    event_ts_utc: datetime
    before_state: Mapping[str, Any] | None
    after_state: Mapping[str, Any] | None
    metadata: Mapping[str, Any] | None
    correlation_id: str
    integrity: str
    chain_hash: str


@dataclass(frozen=True)
class AuditTrailQuery:
    entity_type: str | None = None
    entity_id: str | None = None
    event_types: Sequence[str] = field(default_factory=tuple)
    user_id: str | None = None
    start_ts_utc: datetime | None = None
    end_ts_utc: datetime | None = None
    correlation_id: str | None = None
    limit: int = DEFAULT_QUERY_LIMIT
    offset: int = 0


@dataclass(frozen=True)
class AuditTrailPage:
    logs: tuple[AuditRecord, ...]
    total: int


def compute_integrity(
    *,
    event_type: str,
    entity_type: str,
    entity_id: str,
    event_ts_utc: datetime,
    before_state: Mapping[str, Any] | None,
    after_state: Mapping[str, Any] | None,
    metadata: Mapping[str, Any] | None,
) -> str:
    """SHA-256 over the canonical audit payload."""
    return stable_hash(
        (
            "audit_log",
            event_type,
            entity_type,
            entity_id,
            event_ts_utc,
            canonical_json(before_state),
            canonical_json(after_state),
            canonical_json(metadata),
        )
    )


def compute_chain_hash(
    *,
    audit_log_id: UUID,
    event_type: str,
    entity_type: str,
    entity_id: str,
    event_ts_utc: datetime,
    integrity: str,
    previous_chain_hash: str | None,
) -> str:
    return stable_hash(
        (
            "audit_chain",
            str(audit_log_id),
            event_type,
            entity_type,
            entity_id,
            event_ts_utc,
            integrity,
            previous_chain_hash or "GENESIS",
        )
    )


class AuditService:
    """Writes and queries the append-only ``audit_log`` table.

    ``submit`` and ``record`` are fire-and-forget: they hand the write to the
    optional executor (inline when absent) and log failures instead of raising,
    so audit trouble never breaks a lifecycle decision.
    """

    def __init__(
        self,
        db: EngineDatabase,
        *,
        clock: EngineClock | None = None,
        executor: Executor | None = None,
    ) -> None:
        self._db = db
        self._clock = clock or EngineClock()
        self._executor = executor

    def create_audit_log(self, entry: AuditEntry) -> AuditRecord:
        """Persist one entry, linking it to the latest chain hash."""
        ts = self._clock.now_utc()
        event_type = AuditEventType(entry.event_type).value
        integrity = compute_integrity(
            event_type=event_type,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            event_ts_utc=ts,
            before_state=entry.before_state,
            after_state=entry.after_state,
            metadata=entry.metadata,
        )
        previous = self._db.fetch_one(
            """
            SELECT chain_hash
            FROM audit_log
            ORDER BY event_ts_utc DESC, audit_log_seq DESC
            LIMIT 1
            """,
            {},
        )
        previous_chain_hash = None if previous is None else previous.get("chain_hash")
        audit_log_id = deterministic_uuid("audit_log", integrity, previous_chain_hash or "GENESIS")
        correlation_id = entry.correlation_id or str(deterministic_uuid("audit_correlation", audit_log_id))
        chain_hash = compute_chain_hash(
            audit_log_id=audit_log_id,
            event_type=event_type,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            event_ts_utc=ts,
            integrity=integrity,
            previous_chain_hash=previous_chain_hash,
        )
        self._db.execute(
            """
            INSERT INTO audit_log (
                audit_log_id, event_type, entity_type, entity_id, user_id, event_ts_utc,
                before_state, after_state, metadata, correlation_id, integrity, chain_hash
            ) VALUES (
                :audit_log_id, :event_type, :entity_type, :entity_id, :user_id, :event_ts_utc,
                CAST(:before_state AS JSONB), CAST(:after_state AS JSONB), CAST(:metadata AS JSONB),
                :correlation_id, :integrity, :chain_hash
            )
            """,
            {
                "audit_log_id": str(audit_log_id),
                "event_type": event_type,
                "entity_type": entry.entity_type,
                "entity_id": entry.entity_id,
                "user_id": entry.user_id,
                "event_ts_utc": ts,
                "before_state": None if entry.before_state is None else canonical_json(entry.before_state),
                "after_state": None if entry.after_state is None else canonical_json(entry.after_state),
                "metadata": None if entry.metadata is None else canonical_json(entry.metadata),
                "correlation_id": correlation_id,
                "integrity": integrity,
                "chain_hash": chain_hash,
            },
        )
        logger.info(
            "Audit log created: %s for %s:%s (correlationId: %s)",
            event_type,
            entry.entity_type,
            entry.entity_id,
            correlation_id,
        )
        return AuditRecord(
            audit_log_id=audit_log_id,
            event_type=event_type,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            user_id=entry.user_id,
            event_ts_utc=ts,
            before_state=entry.before_state,
            after_state=entry.after_state,
            metadata=entry.metadata,
            correlation_id=correlation_id,
            integrity=integrity,
            chain_hash=chain_hash,
        )

    def _create_safely(self, entry: AuditEntry) -> Optional[AuditRecord]:
        # A failed insert must not poison the caller's open transaction.
        try:
            with self._db.savepoint():
                return self.create_audit_log(entry)
        except Exception as exc:
            logger.warning(
                "Failed to write audit log %s for %s:%s: %s",
                getattr(entry.event_type, "value", entry.event_type),
                entry.entity_type,
                entry.entity_id,
                exc,
            )
            return None

    def submit(self, entry: AuditEntry) -> None:
        """Fire-and-forget write."""
        if self._executor is None:
            self._create_safely(entry)
            return
        try:
            self._executor.submit(self._create_safely, entry)
        except RuntimeError as exc:
            logger.warning("Audit executor rejected %s entry: %s", entry.entity_type, exc)

    def record(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        *,
        user_id: str | None = None,
        before_state: Mapping[str, Any] | None = None,
        after_state: Mapping[str, Any] | None = None,
        metadata: Mapping[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> None:
        self.submit(
            AuditEntry(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                user_id=user_id,
                before_state=before_state,
                after_state=after_state,
                metadata=metadata,
                correlation_id=correlation_id,
            )
        )

    def query_audit_trail(self, query: AuditTrailQuery) -> AuditTrailPage:
        clauses: list[str] = []
        params: dict[str, Any] = {}
        if query.entity_type:
            clauses.append("entity_type = :entity_type")
            params["entity_type"] = query.entity_type
        if query.entity_id:
            clauses.append("entity_id = :entity_id")
            params["entity_id"] = query.entity_id
        if query.event_types:
            clauses.append("CAST(event_type AS TEXT) = ANY(:event_types)")
            params["event_types"] = [AuditEventType(value).value for value in query.event_types]
        if query.user_id:
            clauses.append("user_id = :user_id")
            params["user_id"] = query.user_id
        if query.start_ts_utc is not None:
            clauses.append("event_ts_utc >= :start_ts_utc")
            params["start_ts_utc"] = query.start_ts_utc
        if query.end_ts_utc is not None:
            clauses.append("event_ts_utc <= :end_ts_utc")
            params["end_ts_utc"] = query.end_ts_utc
        if query.correlation_id:
            clauses.append("correlation_id = :correlation_id")
            params["correlation_id"] = query.correlation_id
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        count_row = self._db.fetch_one(f"SELECT COUNT(*) AS total FROM audit_log {where}", params)
        rows = self._db.fetch_all(
            f"""
            SELECT *
            FROM audit_log
            {where}
            ORDER BY event_ts_utc DESC, audit_log_seq DESC
            LIMIT :limit OFFSET :offset
            """,
            {**params, "limit": query.limit, "offset": query.offset},
        )
        total = int(count_row["total"]) if count_row is not None else 0
        return AuditTrailPage(logs=tuple(self._to_record(row) for row in rows), total=total)

    def get_entity_audit_trail(self, entity_type: str, entity_id: str, limit: int = 50) -> tuple[AuditRecord, ...]:
        return self.query_audit_trail(
            AuditTrailQuery(entity_type=entity_type, entity_id=entity_id, limit=limit)
        ).logs

    @staticmethod
    def verify_integrity(record: AuditRecord) -> bool:
        expected = compute_integrity(
            event_type=record.event_type,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            event_ts_utc=record.event_ts_utc,
            before_state=record.before_state,
            after_state=record.after_state,
            metadata=record.metadata,
        )
        return expected == record.integrity

    def verify_multiple_entries(self, records: Sequence[AuditRecord]) -> tuple[int, tuple[UUID, ...]]:
        """Return the verified count and the ids that failed verification."""
        failed: list[UUID] = []
        for record in records:
            if not self.verify_integrity(record):
                logger.warning("Integrity verification failed for audit log: %s", record.audit_log_id)
                failed.append(record.audit_log_id)
        return len(records) - len(failed), tuple(failed)

    @staticmethod
    def _to_record(row: Mapping[str, Any]) -> AuditRecord:
        ts = parse_utc(row["event_ts_utc"])
        if ts is None:
            raise RuntimeError(f"audit_log row {row.get('audit_log_id')} has no event timestamp")
        return AuditRecord(
            audit_log_id=UUID(str(row["audit_log_id"])),
            event_type=str(row["event_type"]),
            entity_type=str(row["entity_type"]),
            entity_id=str(row["entity_id"]),
            user_id=row.get("user_id"),
            event_ts_utc=ts,
            before_state=load_json(row.get("before_state")),
            after_state=load_json(row.get("after_state")),
            metadata=load_json(row.get("metadata")),
            correlation_id=str(row["correlation_id"]),
            integrity=str(row["integrity"]),
            chain_hash=str(row["chain_hash"]),
        )
