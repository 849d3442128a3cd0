"""Lifecycle engine schema: ORM models, enums and the Alembic migration."""

from __future__ import annotations

import logging

from backend.db.base import Base
from backend.db import models
from backend.db.enums import AuditEventType, DeploymentStatus, MarketRegimeType, StrategyStatus

logger = logging.getLogger(__name__)

__all__ = ["AuditEventType", "Base", "DeploymentStatus", "MarketRegimeType", "StrategyStatus", "models"]
