"""
Trace Compactor.

Shrinks the ``candidates`` payload of old decision-trace rows. Arrays keep
their first ``max_items`` entries plus a ``_compacted`` sentinel; objects and
scalars are replaced by a sentinel that records the original size.

Rows are paged by (occurred_at, id) so a long sweep never re-reads a row.
"""
from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from loguru import logger
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.core.env import env_bool, env_int, env_list
from src.db.models import DecisionTrace, StructuralDecisionTrace, utcnow

DEFAULT_TABLES = ["structural_decision_trace", "decision_trace"]
TRACE_MODELS = {
    StructuralDecisionTrace.__tablename__: StructuralDecisionTrace,
    DecisionTrace.__tablename__: DecisionTrace,
}
MAX_BATCH_SIZE = 5000


@dataclass
class TraceCompactionConfig:
    enabled: bool = False
    min_age_days: int = 30
    batch_size: int = 500
    max_json_bytes: int = 20000
    max_items: int = 50
    tables: list[str] = field(default_factory=lambda: list(DEFAULT_TABLES))
    # Wall-clock budget per invocation; 0 means unbounded.
    max_seconds: float = 0.0

    def __post_init__(self):
        if self.min_age_days <= 0:
            self.min_age_days = 30
        if self.batch_size <= 0:
            self.batch_size = 500
        self.batch_size = min(self.batch_size, MAX_BATCH_SIZE)
        if self.max_json_bytes <= 0:
            self.max_json_bytes = 20000
        if self.max_items <= 0:
            self.max_items = 50
        self.tables = [t.strip().lower() for t in self.tables if t and t.strip()] or list(DEFAULT_TABLES)

    @classmethod
    def from_env(cls) -> "TraceCompactionConfig":
        return cls(
            enabled=env_bool("TRACE_COMPACTION_ENABLED", False),
            min_age_days=env_int("TRACE_COMPACTION_MIN_AGE_DAYS", 30),
            batch_size=env_int("TRACE_COMPACTION_BATCH_SIZE", 500),
            max_json_bytes=env_int("TRACE_COMPACTION_MAX_JSON_BYTES", 20000),
            max_items=env_int("TRACE_COMPACTION_MAX_ITEMS", 50),
            tables=env_list("TRACE_COMPACTION_TABLES", DEFAULT_TABLES),
        )


@dataclass
class TableCompactionStats:
    table: str
    scanned: int = 0
    updated: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"table": self.table, "scanned": self.scanned, "updated": self.updated, "skipped": self.skipped}


@dataclass
class TraceCompactionResult:
    tables: list[TableCompactionStats] = field(default_factory=list)
    total_scanned: int = 0
    total_updated: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "tables": [t.to_dict() for t in self.tables],
            "total_scanned": self.total_scanned,
            "total_updated": self.total_updated,
        }


def _dumps(v: Any) -> str:
    return json.dumps(v, ensure_ascii=False, separators=(",", ":"))


def _encoded(raw: Any) -> Optional[str]:
    """The stored JSON text; None for empty or null payloads."""
    if raw is None:
        return None
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        text = raw.strip()
        return None if text in ("", "null") else text
    return _dumps(raw)


def _type_name(v: Any) -> str:
    if isinstance(v, bool):
        return "bool"
    if isinstance(v, (int, float)):
        return "number"
    if isinstance(v, str):
        return "string"
    return type(v).__name__


def _already_compacted(payload: Any, max_items: int) -> bool:
    """An array that ends in a sentinel and holds at most ``max_items`` kept entries."""
    if not isinstance(payload, list) or not payload:
        return False
    last = payload[-1]
    return isinstance(last, dict) and last.get("_compacted") is True and len(payload) - 1 <= max_items


def compact_candidate_array(items: list[Any], original_bytes: int, max_items: int, max_bytes: int) -> list[Any] | dict:
    kept = list(items[:max_items]) if max_items > 0 else list(items)
    sentinel = {
        "_compacted": True,
        "original_count": len(items),
        "original_bytes": original_bytes,
        "kept": len(kept),
    }
    out: list[Any] | dict = kept + [sentinel] if items else kept
    if max_bytes > 0 and len(_dumps(out).encode("utf-8")) > max_bytes:
        sentinel["kept"] = 0
        out = sentinel
    return out


def compact_candidates(raw: Any, max_bytes: int, max_items: int) -> tuple[bool, Any]:
    """
    Compact one ``candidates`` payload.

    Args:
        raw: Stored value (decoded JSON, or JSON text)
        max_bytes: Byte budget for the encoded payload
        max_items: Array entries kept before the sentinel

    Returns:
        (changed, new_value); ``new_value`` is ``raw`` when unchanged
    """
    text = _encoded(raw)
    if max_bytes <= 0 or text is None:
        return False, raw
    size = len(text.encode("utf-8"))
    try:
        payload = json.loads(text) if isinstance(raw, (str, bytes, bytearray)) else raw
    except ValueError:
        if size <= max_bytes:
            return False, raw
        return True, {"_compacted": True, "original_bytes": size, "original_format": "unknown"}

    if size <= max_bytes:
        # Within budget, but a long array is still trimmed.
        if isinstance(payload, list) and max_items > 0 and len(payload) > max_items:
            if _already_compacted(payload, max_items):
                return False, raw
            return True, compact_candidate_array(payload, size, max_items, max_bytes)
        return False, raw
    if isinstance(payload, list):
        return True, compact_candidate_array(payload, size, max_items, max_bytes)
    if isinstance(payload, dict):
        return True, {"_compacted": True, "original_bytes": size, "keys": len(payload)}
    return True, {"_compacted": True, "original_bytes": size, "original_type": _type_name(payload)}


class TraceCompactor:
    """
    Sweep decision-trace tables and compact oversized candidate payloads.

    Example:
        >>> compactor = TraceCompactor(session, TraceCompactionConfig(enabled=True))
        >>> result = compactor.run(dry_run=True)
        >>> result.total_scanned
        120
    """

    def __init__(self, db_session: Session, config: Optional[TraceCompactionConfig] = None):
        self.db = db_session
        self.config = config or TraceCompactionConfig.from_env()

    def run(self, dry_run: bool = False, limit: int = 0, now: Optional[datetime] = None) -> TraceCompactionResult:
        """
        Compact every configured table.

        Args:
            dry_run: Count what would change without writing
            limit: Max rows scanned per table (0 = no limit)
            now: Reference time for the age cutoff

        Returns:
            Per-table and total counts; empty when compaction is disabled
        """
        out = TraceCompactionResult()
        if not self.config.enabled:
            logger.info("Trace compaction disabled (TRACE_COMPACTION_ENABLED=false)")
            return out
        cutoff = (now or utcnow()) - timedelta(days=self.config.min_age_days)
        deadline = time.monotonic() + self.config.max_seconds if self.config.max_seconds > 0 else None
        for table in self.config.tables:
            model = TRACE_MODELS.get(table)
            if model is None:
                logger.warning(f"Trace compaction: unknown table {table!r}, skipping")
                continue
            stats = self._compact_table(model, cutoff, dry_run, limit, deadline)
            out.tables.append(stats)
            out.total_scanned += stats.scanned
            out.total_updated += stats.updated
        logger.info(
            f"Trace compaction{' (dry run)' if dry_run else ''}: "
            f"scanned={out.total_scanned} updated={out.total_updated}"
        )
        return out

    def _compact_table(self, model, cutoff: datetime, dry_run: bool, limit: int, deadline: Optional[float]):
        stats = TableCompactionStats(table=model.__tablename__)
        cfg = self.config
        last_at: Optional[datetime] = None
        last_id = None
        while True:
            if deadline is not None and time.monotonic() >= deadline:
                logger.info(f"Trace compaction: time budget reached on {stats.table}")
                break
            batch = cfg.batch_size
            if limit > 0:
                batch = min(batch, limit - stats.scanned)
            q = select(model.id, model.occurred_at, model.candidates).where(
                model.occurred_at < cutoff, model.candidates.is_not(None)
            )
            if last_at is not None:
                q = q.where(or_(model.occurred_at > last_at, and_(model.occurred_at == last_at, model.id > last_id)))
            rows = self.db.execute(q.order_by(model.occurred_at, model.id).limit(batch)).all()
            if not rows:
                break

            for row_id, occurred_at, candidates in rows:
                stats.scanned += 1
                last_at, last_id = occurred_at, row_id
                changed, new_value = compact_candidates(candidates, cfg.max_json_bytes, cfg.max_items)
                if not changed:
                    stats.skipped += 1
                    continue
                if not dry_run:
                    try:
                        with self.db.begin_nested():
                            self.db.execute(update(model).where(model.id == row_id).values(candidates=new_value))
                    except SQLAlchemyError as e:
                        stats.skipped += 1
                        logger.warning(f"Trace compaction: skipping {stats.table} row {row_id}: {e}")
                        continue
                stats.updated += 1
                logger.debug(f"Compacted {stats.table} row {row_id}")

            if limit > 0 and stats.scanned >= limit:
                break
        logger.info(f"Trace compaction {stats.table}: scanned={stats.scanned} updated={stats.updated}")
        return stats
