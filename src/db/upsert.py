"""
Dialect-aware conflict helpers.

Concurrent stages rely on unique constraints plus ON CONFLICT DO NOTHING
instead of application locks; callers re-read by natural key afterwards to
obtain the authoritative row.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def insert_ignore(session: Session, model: type, rows: list[dict[str, Any]]) -> int:
    """
    Insert rows, silently skipping any that violate a unique constraint.

    Args:
        session: Active session (its bind decides the dialect).
        model: Declarative model class; the insert targets its table.
        rows: Dicts keyed by column name (e.g. "metadata", not "meta").

    Returns:
        Number of rows the database reported as inserted (best effort).
    """
    if not rows:
        return 0
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model.__table__).values(rows).on_conflict_do_nothing()
    elif dialect == "sqlite":
        stmt = sqlite.insert(model.__table__).values(rows).on_conflict_do_nothing()
    else:
        raise NotImplementedError(f"insert_ignore not supported for dialect {dialect}")
    result = session.execute(stmt)
    return max(result.rowcount or 0, 0)
