"""
Declarative base shared by every model.

Columns use portable types (``Uuid``, ``JSON``) so the same models back the
PostgreSQL deployment and the in-memory SQLite engine used by tests.
Timestamps are stored as naive UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all ORM models."""


def utcnow() -> datetime:
    """Current UTC time without tzinfo (matches how rows are stored)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
