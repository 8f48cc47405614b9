"""
Batch Fetcher

Keyset pagination over one PII table: rows with at least one non-null
ciphertext column and a primary key greater than the last checkpoint, in
ascending key order, bounded by the batch size. Windowing by key rather than
OFFSET keeps each query cheap and makes progress restartable.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.engine import Engine

from pii_rotation.core.database.encryption import as_bytes
from pii_rotation.core.rotation.registry import TableSpec

logger = logging.getLogger(__name__)


@dataclass
class BatchWorkItem:
    """One row's primary key and raw ciphertext values. Never persisted."""

    record_id: Any
    values: Dict[str, Optional[bytes]] = field(default_factory=dict)

    def __repr__(self) -> str:
        # Ciphertext stays out of reprs and tracebacks
        present = [name for name, value in self.values.items() if value]
        return f"BatchWorkItem(record_id={self.record_id!r}, fields={present})"


def _qualifying(spec: TableSpec, clause):
    return or_(*[clause.c[name].isnot(None) for name in spec.fields])


def _to_item(spec: TableSpec, row) -> BatchWorkItem:
    mapping = row._mapping
    values = {}
    for name in spec.fields:
        value = mapping[name]
        values[name] = as_bytes(value) if isinstance(value, (bytes, bytearray, memoryview)) else value
    return BatchWorkItem(record_id=mapping[spec.id_field], values=values)


class BatchFetcher:
    """Reads windows of qualifying rows on short-lived connections."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def count(self, spec: TableSpec) -> int:
        """Number of rows with at least one non-null ciphertext column."""
        clause = spec.to_clause()
        query = select(func.count()).select_from(clause).where(_qualifying(spec, clause))
        with self.engine.connect() as conn:
            return int(conn.execute(query).scalar() or 0)

    def fetch(self, spec: TableSpec, after_id: Any = None, limit: int = 100) -> List[BatchWorkItem]:
        """
        Fetch the next window of rows.

        Args:
            spec: Table to read
            after_id: Last checkpointed primary key (None on first call)
            limit: Maximum rows to return

        Returns:
            Work items ordered by ascending primary key
        """
        clause = spec.to_clause()
        id_col = clause.c[spec.id_field]
        query = select(id_col, *[clause.c[name] for name in spec.fields]).where(_qualifying(spec, clause))
        if after_id is not None:
            query = query.where(id_col > after_id)
        query = query.order_by(id_col).limit(limit)

        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        logger.debug(f"Fetched {len(rows)} rows from {spec.table} after {after_id!r}")
        return [_to_item(spec, row) for row in rows]

    def fetch_by_ids(self, spec: TableSpec, ids: Iterable[Any]) -> List[BatchWorkItem]:
        """Fetch specific rows (qualifying or not) ordered by primary key."""
        ids = list(ids)
        if not ids:
            return []
        clause = spec.to_clause()
        id_col = clause.c[spec.id_field]
        query = select(id_col, *[clause.c[name] for name in spec.fields]).where(
            id_col.in_(ids)
        ).order_by(id_col)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_to_item(spec, row) for row in rows]

    def iterate(self, spec: TableSpec, batch_size: int):
        """Yield successive windows over the whole table (read-only scans)."""
        after_id = None
        while True:
            batch = self.fetch(spec, after_id, batch_size)
            if not batch:
                return
            yield batch
            after_id = batch[-1].record_id
