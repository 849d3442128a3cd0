"""SQLAlchemy declarative base shared by the strategy lifecycle models."""

from __future__ import annotations

import logging

from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

metadata = MetaData()


class Base(DeclarativeBase):
    """Base class for strategy, deployment, regime and audit models."""

    metadata = metadata
