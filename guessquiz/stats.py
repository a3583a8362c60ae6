"""
Per-entity guessing statistics.

Stores are keyed by entity id. Concurrent updates to the same entity from
two sessions are not serialised: the read-modify-write is last-writer-wins,
which can drop one increment under contention.
"""
import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from .models import StatRecord

logger = logging.getLogger(__name__)


class StatsStore(Protocol):
    """Protocol for statistics persistence."""

    async def get_record(self, entity_id: str) -> Optional[StatRecord]:
        """Return the record for ``entity_id`` or None when it has none yet."""
        ...

    async def upsert_record(self, record: StatRecord) -> None:
        """Insert or replace the record keyed by ``record.entity_id``."""
        ...

    async def all_records(self) -> List[StatRecord]:
        """Return every stored record."""
        ...


class InMemoryStatsStore:
    """Stats store kept in process memory. Used for tests and dry runs."""

    def __init__(self, records: Optional[Dict[str, StatRecord]] = None):
        self._records: Dict[str, StatRecord] = dict(records or {})

    async def get_record(self, entity_id: str) -> Optional[StatRecord]:
        record = self._records.get(entity_id)
        return StatRecord(**record.to_dict()) if record else None

    async def upsert_record(self, record: StatRecord) -> None:
        self._records[record.entity_id] = StatRecord(**record.to_dict())

    async def all_records(self) -> List[StatRecord]:
        return [StatRecord(**record.to_dict()) for record in self._records.values()]


class JsonFileStatsStore:
    """
    Stats store backed by one JSON file (``{entity_id: record}``).

    File I/O runs in a worker thread; writes replace the file atomically and
    are serialised so updates to different entities never overwrite each other.
    """

    def __init__(self, file_path: str):
        self.file_path = Path(file_path)
        self._write_lock = asyncio.Lock()

    async def get_record(self, entity_id: str) -> Optional[StatRecord]:
        data = await asyncio.to_thread(self._read)
        raw = data.get(entity_id)
        return StatRecord.from_dict(raw) if raw else None

    async def upsert_record(self, record: StatRecord) -> None:
        async with self._write_lock:
            await asyncio.to_thread(self._upsert, record)

    async def all_records(self) -> List[StatRecord]:
        data = await asyncio.to_thread(self._read)
        return [StatRecord.from_dict(raw) for raw in data.values()]

    def _read(self) -> Dict[str, dict]:
        if not self.file_path.exists():
            return {}
        with open(self.file_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Stats file {self.file_path} must contain a JSON object")
        return data

    def _upsert(self, record: StatRecord) -> None:
        data = self._read()
        data[record.entity_id] = record.to_dict()
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.file_path.parent, suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.file_path)
        except BaseException:
            os.unlink(tmp_path)
            raise


def apply_outcome(
    record: Optional[StatRecord],
    entity_id: str,
    display_label: str,
    was_correct: bool
) -> StatRecord:
    """
    Compute the record after one more outcome.

    A missing record counts as all zeros. Exactly one of ``correct`` and
    ``incorrect`` is incremented, ``total`` always is, and ``percent`` is
    recomputed from the counters.
    """
    correct = (record.correct if record else 0) + (1 if was_correct else 0)
    incorrect = (record.incorrect if record else 0) + (0 if was_correct else 1)
    total = (record.total if record else 0) + 1
    return StatRecord(
        entity_id=entity_id,
        display_label=display_label,
        correct=correct,
        incorrect=incorrect,
        total=total,
        percent=round(100 * correct / total)
    )


class StatsAggregator:
    """Records round outcomes and answers aggregate questions about them."""

    def __init__(self, store: StatsStore):
        self.store = store

    async def record_outcome(self, entity_id: str, display_label: str, was_correct: bool) -> StatRecord:
        """
        Read-modify-write the record for ``entity_id``.

        Returns:
            The record as written
        """
        current = await self.store.get_record(entity_id)
        updated = apply_outcome(current, entity_id, display_label, was_correct)
        await self.store.upsert_record(updated)
        logger.debug(
            f"Stats updated for {entity_id}: {updated.correct}/{updated.total} ({updated.percent}%)"
        )
        return updated

    async def show_counts(self) -> Dict[str, int]:
        """How many rounds each entity has appeared in."""
        return {record.entity_id: record.total for record in await self.store.all_records()}

    async def summary(self, entity_count: Optional[int] = None) -> Dict[str, float]:
        """
        Total rounds played and the average per entity.

        Args:
            entity_count: Number of known entities; defaults to the number of
                entities with a record
        """
        records = await self.store.all_records()
        total_rounds = sum(record.total for record in records)
        count = entity_count if entity_count is not None else len(records)
        return {
            'total_rounds': total_rounds,
            'entity_count': count,
            'average_per_entity': round(total_rounds / count, 1) if count > 0 else 0.0
        }
