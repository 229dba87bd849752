"""
Idempotent Writer

Batched upsert keyed on each record's natural key, so replaying the same
records (a re-run quick sync, a re-processed bulk file, overlapping pages)
never creates duplicate rows.

Also owns the granularity rule for date-slotted entities: once a date has
GRANULAR rows (per-ad insights) an AGGREGATE row (account totals) for that
date must not exist, otherwise totals would be double counted.
"""
from datetime import date
from typing import Dict, Iterable, List, Optional, Set, Tuple

from app.config import get_settings
from app.storage.base import SLOTTED_ENTITIES, SyncStore
from app.sync.errors import ConnectionGoneError
from app.sync.types import EntityType, FetchedRecord, Granularity, WriteOutcome
from app.utils.helpers import chunk_list
from app.utils.logger import log


class IdempotentWriter:
    """Writes FetchedRecords through a SyncStore"""

    def __init__(self, store: SyncStore, batch_size: Optional[int] = None):
        self.store = store
        self.batch_size = max(1, batch_size or get_settings().write_batch_size)

    def upsert_batch(self, connection_id: int, records: Iterable[FetchedRecord]) -> WriteOutcome:
        """
        Insert or update records for one connection.

        Within one call a repeated natural key keeps its last occurrence and
        counts as a duplicate. A chunk the store rejects is counted as failed
        and the remaining chunks still run; ConnectionGoneError propagates.

        Returns:
            WriteOutcome with inserted/updated/duplicates/dominated/superseded/failed
        """
        outcome = WriteOutcome()
        grouped: Dict[EntityType, Dict[Tuple, FetchedRecord]] = {}

        for record in records:
            bucket = grouped.setdefault(record.entity_type, {})
            if record.natural_key in bucket:
                outcome.duplicates += 1
            bucket[record.natural_key] = record

        for entity_type, bucket in grouped.items():
            outcome.merge(self._write_entity(connection_id, entity_type, list(bucket.values())))

        if outcome.failed:
            log.warning(f"Connection {connection_id}: {outcome.failed} records failed to write")
        return outcome

    def _write_entity(self, connection_id: int, entity_type: EntityType, records: List[FetchedRecord]) -> WriteOutcome:
        outcome = WriteOutcome()
        slotted = entity_type in SLOTTED_ENTITIES
        if slotted:
            records = self._drop_dominated(connection_id, entity_type, records, outcome)

        written_granular_dates: Set[date] = set()
        for chunk in chunk_list(records, self.batch_size):
            try:
                existing = self.store.existing_keys(connection_id, entity_type, [r.natural_key for r in chunk])
                self.store.upsert_rows(connection_id, entity_type, [r.data for r in chunk])
            except ConnectionGoneError:
                raise
            except Exception as e:
                outcome.failed += len(chunk)
                log.error(f"Failed to write {len(chunk)} {entity_type.value} rows for connection {connection_id}: {e}")
                continue

            outcome.updated += len(existing)
            outcome.inserted += len(chunk) - len(existing)
            if slotted:
                written_granular_dates.update(
                    r.slot_date for r in chunk if r.granularity == Granularity.GRANULAR
                )

        # Aggregates go only once their granular replacement is stored
        if written_granular_dates:
            outcome.superseded += self.store.delete_aggregates(connection_id, entity_type, written_granular_dates)
            if outcome.superseded:
                log.info(
                    f"Removed {outcome.superseded} account-level {entity_type.value} rows "
                    f"superseded by granular data for connection {connection_id}"
                )
        return outcome

    def _drop_dominated(
        self,
        connection_id: int,
        entity_type: EntityType,
        records: List[FetchedRecord],
        outcome: WriteOutcome
    ) -> List[FetchedRecord]:
        """Skip AGGREGATE records for dates that have GRANULAR rows (stored or in this call)"""
        granular_in_call = {r.slot_date for r in records if r.granularity == Granularity.GRANULAR}
        aggregate_dates = {r.slot_date for r in records if r.granularity == Granularity.AGGREGATE}
        if not aggregate_dates:
            return records

        dominated_dates = granular_in_call | self.store.granular_dates(
            connection_id, entity_type, aggregate_dates - granular_in_call
        )

        kept = []
        for record in records:
            if record.granularity == Granularity.AGGREGATE and record.slot_date in dominated_dates:
                outcome.dominated += 1
                continue
            kept.append(record)

        if outcome.dominated:
            log.debug(
                f"Skipped {outcome.dominated} aggregate {entity_type.value} rows already covered "
                f"by granular data for connection {connection_id}"
            )
        return kept
