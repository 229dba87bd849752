"""
Bulk Job Orchestrator

Drives one remote bulk-export job for one (connection, entity type):
submit -> poll until terminal -> stream the JSONL result -> write.

Runs detached from the request that started the sync and may take hours.
Every failure ends as a FAILED/CANCELED outcome for this entity type only;
nothing is raised to sibling jobs.
"""
import asyncio
import json
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from app.config import Settings, get_settings
from app.connectors.base import BulkExportClient
from app.connectors.fetcher import FetchError
from app.services.idempotent_writer import IdempotentWriter
from app.storage.base import SyncStore
from app.sync.errors import BulkSubmitError, ConnectionGoneError
from app.sync.types import (
    BulkJob,
    BulkJobStatus,
    EntityType,
    FetchedRecord,
    ProcessingOutcome,
    RemoteJobStatus,
    SyncStatus,
    transition_job_status,
)
from app.utils.logger import connection_log

# Local error codes (remote codes such as ACCESS_DENIED are stored as-is)
POLL_TIMEOUT = "POLL_TIMEOUT"
CONNECTION_GONE = "CONNECTION_GONE"
STATUS_CHECK_FAILED = "STATUS_CHECK_FAILED"
RESULT_DOWNLOAD_FAILED = "RESULT_DOWNLOAD_FAILED"
PROCESSING_FAILED = "PROCESSING_FAILED"


@dataclass(frozen=True)
class PollPolicy:
    """
    Polling cadence for remote jobs (not error recovery).

    Interval before poll n+1 is min(initial_interval + step * (n - 1), max_interval).
    """
    initial_interval: float = 15.0
    step: float = 15.0
    max_interval: float = 120.0
    max_polls: int = 720

    def interval_for(self, poll_number: int) -> float:
        return min(self.initial_interval + self.step * max(poll_number - 1, 0), self.max_interval)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PollPolicy":
        return cls(
            initial_interval=settings.bulk_poll_initial_seconds,
            step=settings.bulk_poll_step_seconds,
            max_interval=settings.bulk_poll_max_seconds,
            max_polls=max(1, settings.bulk_poll_max_attempts),
        )


class BulkJobOrchestrator:
    """One instance per (connection, entity type) run"""

    def __init__(
        self,
        store: SyncStore,
        client: BulkExportClient,
        connection_id: int,
        writer: Optional[IdempotentWriter] = None,
        poll_policy: Optional[PollPolicy] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        platform: str = ""
    ):
        self.store = store
        self.client = client
        self.connection_id = connection_id
        self.writer = writer or IdempotentWriter(store)
        self.poll_policy = poll_policy or PollPolicy.from_settings(get_settings())
        self._sleep = sleep
        self.log = connection_log(connection_id, platform)

    def _ensure_connection_active(self):
        """Raise ConnectionGoneError once the connection is deleted or no longer importing"""
        connection = self.store.get_connection(self.connection_id)
        if connection is None:
            raise ConnectionGoneError(f"Connection {self.connection_id} was deleted")
        if connection.sync_status != SyncStatus.BULK_IMPORTING:
            raise ConnectionGoneError(
                f"Connection {self.connection_id} left BULK_IMPORTING ({connection.sync_status.value})"
            )

    def _finish(self, job: BulkJob, status: BulkJobStatus, error_code: Optional[str] = None) -> BulkJob:
        if job.status.is_terminal:
            return job
        transition_job_status(job, status, error_code)
        return self.store.update_bulk_job(job)

    async def submit(self, entity_type: EntityType) -> BulkJob:
        """
        Start the remote export and record it as RUNNING.

        Raises BulkSubmitError if the vendor refuses; no row is created then.
        """
        remote = await self.client.submit(entity_type)
        job = BulkJob(
            connection_id=self.connection_id,
            entity_type=entity_type,
            remote_job_id=remote.job_id,
            status=BulkJobStatus.RUNNING,
        )
        job = self.store.create_bulk_job(job)
        self.log.info(f"Submitted {entity_type.value} bulk export {remote.job_id}")
        return job

    async def poll_until_terminal(self, job: BulkJob) -> RemoteJobStatus:
        """
        Poll, sleep, poll again until the remote job is terminal.

        Rate-limited or transient status checks count as "still running".
        Raises ConnectionGoneError if the connection disappears between polls.
        """
        policy = self.poll_policy

        for poll in range(1, policy.max_polls + 1):
            self._ensure_connection_active()

            try:
                status = await self.client.get_status(job.remote_job_id)
            except FetchError as e:
                if not e.kind.is_retryable:
                    self.log.error(f"Status check for {job.remote_job_id} failed permanently: {e.message}")
                    return RemoteJobStatus(job.remote_job_id, BulkJobStatus.FAILED, error_code=STATUS_CHECK_FAILED)
                self.log.warning(f"Status check {poll} for {job.remote_job_id} was {e.kind.value}; still waiting")
                status = None

            if status is not None:
                if status.status.is_terminal:
                    self.log.info(
                        f"{job.entity_type.value} export {job.remote_job_id} finished {status.status.value} "
                        f"after {poll} polls"
                    )
                    return status
                self.log.debug(f"{job.entity_type.value} export {job.remote_job_id} is {status.status.value} (poll {poll})")

            if poll < policy.max_polls:
                await self._sleep(policy.interval_for(poll))

        self.log.error(f"{job.entity_type.value} export {job.remote_job_id} not finished after {policy.max_polls} polls")
        return RemoteJobStatus(job.remote_job_id, BulkJobStatus.FAILED, error_code=POLL_TIMEOUT)

    async def process_completed_job(self, job: BulkJob, status: Optional[RemoteJobStatus] = None) -> ProcessingOutcome:
        """
        Stream the result file and write it in batches.

        Each line is decoded on its own; a malformed line is counted in
        records_failed and skipped. The connection is re-checked before every
        batch write so a revoked connection stops the import.
        """
        outcome = ProcessingOutcome(entity_type=job.entity_type, status=BulkJobStatus.RUNNING, job=job)
        buffer: List[FetchedRecord] = []

        try:
            if status is None:
                status = await self.client.get_status(job.remote_job_id)

            async for line in self.client.iter_result_lines(status):
                if not line.strip():
                    continue
                outcome.lines_read += 1
                try:
                    payload = json.loads(line)
                    if not isinstance(payload, dict):
                        raise ValueError("line is not a JSON object")
                    records = self.client.decode_line(job.entity_type, payload)
                except (AttributeError, KeyError, TypeError, ValueError) as e:
                    outcome.decode_errors += 1
                    self.log.warning(f"Skipping bad line {outcome.lines_read} of {job.remote_job_id}: {e}")
                    continue

                buffer.extend(records)
                if len(buffer) >= self.writer.batch_size:
                    self._flush(buffer, outcome)
                    buffer = []

            if buffer:
                self._flush(buffer, outcome)
            outcome.truncated = status.truncated

        except ConnectionGoneError as e:
            self.log.warning(f"Stopping {job.entity_type.value} import: {e}")
            return self._fail_processing(job, outcome, CONNECTION_GONE, str(e))
        except FetchError as e:
            self.log.error(f"Could not read results of {job.remote_job_id}: {e.message}")
            return self._fail_processing(job, outcome, RESULT_DOWNLOAD_FAILED, e.message)
        except Exception as e:
            # The job row must still reach a terminal state
            self.log.opt(exception=e).error(f"Processing {job.remote_job_id} crashed: {e}")
            return self._fail_processing(job, outcome, PROCESSING_FAILED, str(e))

        self._record_counts(job, outcome)
        self._finish(job, BulkJobStatus.COMPLETED)
        outcome.status = BulkJobStatus.COMPLETED
        if outcome.truncated:
            self.log.warning(f"{job.entity_type.value} import of {job.remote_job_id} stopped at the result page limit")
        self.log.info(
            f"Imported {job.entity_type.value}: {outcome.lines_read} lines, {outcome.write.written} written, "
            f"{outcome.decode_errors} bad lines, {outcome.write.failed} failed writes"
        )
        return outcome

    def _flush(self, records: List[FetchedRecord], outcome: ProcessingOutcome):
        self._ensure_connection_active()
        outcome.write.merge(self.writer.upsert_batch(self.connection_id, records))

    def _record_counts(self, job: BulkJob, outcome: ProcessingOutcome):
        job.records_processed = outcome.write.written
        job.records_failed = outcome.decode_errors + outcome.write.failed

    def _fail_processing(self, job: BulkJob, outcome: ProcessingOutcome, error_code: str, message: str) -> ProcessingOutcome:
        self._record_counts(job, outcome)
        self._finish(job, BulkJobStatus.FAILED, error_code)
        outcome.status = BulkJobStatus.FAILED
        outcome.error = message
        return outcome

    async def run(self, entity_type: EntityType) -> ProcessingOutcome:
        """Submit, poll and process; always returns an outcome"""
        try:
            job = await self.submit(entity_type)
        except BulkSubmitError as e:
            self.log.error(f"Could not start {entity_type.value} export: {e}")
            return ProcessingOutcome(entity_type=entity_type, status=BulkJobStatus.FAILED, error=str(e))

        return await self.drive(job)

    async def drive(self, job: BulkJob) -> ProcessingOutcome:
        """Take an already-submitted job from polling to a terminal outcome (also used on resume)"""
        try:
            status = await self.poll_until_terminal(job)
        except ConnectionGoneError as e:
            self.log.warning(f"Abandoning {job.entity_type.value} export {job.remote_job_id}: {e}")
            self._finish(job, BulkJobStatus.FAILED, CONNECTION_GONE)
            return ProcessingOutcome(job.entity_type, BulkJobStatus.FAILED, job=job, error=str(e))

        if status.status != BulkJobStatus.COMPLETED:
            error_code = status.error_code or status.status.value
            self._finish(job, status.status, error_code)
            return ProcessingOutcome(job.entity_type, status.status, job=job, error=error_code)

        return await self.process_completed_job(job, status)
