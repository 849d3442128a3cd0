"""Shared deterministic helpers for the strategy lifecycle engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from hashlib import sha256
import json
from pathlib import Path
from typing import Any, ContextManager, Iterable, Mapping, Optional, Protocol, Sequence
from uuid import UUID, uuid5, NAMESPACE_URL


class EngineDatabase(Protocol):
    """Minimal DB protocol used by engine services."""

    def fetch_one(self, sql: str, params: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
        """Fetch one row."""

    def fetch_all(self, sql: str, params: Mapping[str, Any]) -> Sequence[Mapping[str, Any]]:
        """Fetch rows."""

    def execute(self, sql: str, params: Mapping[str, Any]) -> None:
        """Execute mutation statement."""

    def savepoint(self) -> ContextManager[Any]:
        """Scope statements so a failure inside rolls back only their own writes."""


@dataclass(frozen=True)
class EngineClock:
    """Injectable UTC clock for deterministic testing."""

    def now_utc(self) -> datetime:
        """Return current UTC timestamp."""
        return datetime.now(tz=timezone.utc)


def ensure_dir(path: Path) -> None:
    """Create directory tree if missing."""
    path.mkdir(parents=True, exist_ok=True)


def utc_iso(ts: datetime) -> str:
    """Normalize timestamp to UTC RFC3339 string."""
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def normalize_token(value: Any) -> str:
    """Serialize primitive values deterministically for hashing."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, Decimal):
        return format(value.normalize(), "f") if value != 0 else "0"
    if isinstance(value, datetime):
        return utc_iso(value)
    if isinstance(value, (dict, list, tuple)):
        return canonical_json(value)
    return str(value)


def stable_hash(tokens: Iterable[Any]) -> str:
    """Compute a stable SHA256 hash over canonical token serialization."""
    preimage = "|".join(normalize_token(token) for token in tokens)
    return sha256(preimage.encode("utf-8")).hexdigest()


def deterministic_uuid(namespace: str, *tokens: object) -> UUID:
    """Build UUIDv5 from canonical hash tokens."""
    token_hash = stable_hash((namespace, *tokens))
    return uuid5(NAMESPACE_URL, f"strategy_engine::{namespace}::{token_hash}")


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return utc_iso(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, UUID):
        return str(value)
    if hasattr(value, "value"):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json(payload: Any) -> str:
    """Serialize payload with sorted keys for hashing and JSONB columns."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=_json_default)


def to_float(value: Any, default: float = 0.0) -> float:
    """Coerce DB numerics (Decimal/str/None) to float."""
    if value is None:
        return default
    if isinstance(value, float):
        return value
    return float(value)


def parse_utc(value: Any) -> datetime | None:
    """Parse a datetime or ISO string into an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    text = str(value).strip()
    if not text:
        return None
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def load_json(value: Any) -> Any:
    """Decode JSONB values that some drivers hand back as text."""
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value
