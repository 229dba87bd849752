"""
Connection Sync Controller

Two-phase onboarding of a newly authorized connection:

1. Quick sync: the last few days through the paginated REST endpoint,
   awaited by the caller under a short timeout.
2. Historical import: one bulk-export job per entity type, run concurrently
   in the background; the connection ends COMPLETED only if every job did.

Only a permanent quick-sync failure is raised to the caller. Everything else
resolves into the connection's sync_status and stage_metadata.
"""
import asyncio
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import httpx

from app.config import Settings, get_settings
from app.connectors import build_connector
from app.connectors.base import PlatformConnector
from app.connectors.fetcher import CredentialGate
from app.services.bulk_job_orchestrator import BulkJobOrchestrator, PollPolicy
from app.services.idempotent_writer import IdempotentWriter
from app.storage.base import SyncStore
from app.sync.errors import ConnectionGoneError, ConnectionNotFoundError, QuickSyncError, SyncAlreadyRunningError
from app.sync.types import (
    BulkJobStatus,
    ConnectionState,
    EntityType,
    ProcessingOutcome,
    SyncHandle,
    SyncStatus,
    WriteOutcome,
)
from app.utils.helpers import parse_timestamp, utcnow
from app.utils.logger import connection_log, log


def default_client_factory() -> httpx.AsyncClient:
    settings = get_settings()
    return httpx.AsyncClient(timeout=settings.fetch_timeout_seconds, follow_redirects=True)


class ConnectionSyncController:
    """
    Owns Connection.sync_status transitions.

    NOT_STARTED -> QUICK_SYNC_RUNNING -> BULK_IMPORTING -> COMPLETED | FAILED
    A finished connection (COMPLETED or FAILED) may be synced again.
    """

    def __init__(
        self,
        store: SyncStore,
        client_factory: Callable[[], httpx.AsyncClient] = default_client_factory,
        connector_factory: Callable[..., PlatformConnector] = build_connector,
        settings: Optional[Settings] = None,
        gate: Optional[CredentialGate] = None,
        poll_policy: Optional[PollPolicy] = None,
        sleep: Callable[[float], Any] = asyncio.sleep
    ):
        self.store = store
        self.client_factory = client_factory
        self.connector_factory = connector_factory
        self.settings = settings or get_settings()
        self.gate = gate
        self.poll_policy = poll_policy or PollPolicy.from_settings(self.settings)
        self._sleep = sleep
        self.writer = IdempotentWriter(store, self.settings.write_batch_size)

        # Imports being driven by this process (resume skips them)
        self._active_imports: Set[int] = set()
        self._tasks: Set[asyncio.Task] = set()

    def _connector(self, connection: ConnectionState, client: httpx.AsyncClient) -> PlatformConnector:
        return self.connector_factory(
            connection, client, settings=self.settings, gate=self.gate, sleep=self._sleep
        )

    def _orchestrator(self, connection: ConnectionState, connector: PlatformConnector) -> BulkJobOrchestrator:
        return BulkJobOrchestrator(
            self.store,
            connector.bulk_client(),
            connection.id,
            writer=self.writer,
            poll_policy=self.poll_policy,
            sleep=self._sleep,
            platform=connection.platform,
        )

    # Phase 1

    async def start_sync(self, connection_id: int, background_tasks=None) -> SyncHandle:
        """
        Run quick sync, then launch the historical import detached.

        Args:
            connection_id: Connection to sync
            background_tasks: FastAPI BackgroundTasks; without it an asyncio task is used

        Raises:
            ConnectionNotFoundError: unknown connection
            SyncAlreadyRunningError: quick sync or bulk import already active
            QuickSyncError: permanent failure during quick sync (status is FAILED)
        """
        connection = self.store.begin_sync(connection_id)
        clog = connection_log(connection.id, connection.platform)
        clog.info("Starting sync (quick sync)")

        connection.stage_metadata = {
            "sync_stage": "quick_sync",
            "sync_started_at": utcnow().isoformat(),
        }
        self.store.save_connection(connection)

        quick = WriteOutcome()
        try:
            async with self.client_factory() as client:
                try:
                    connector = self._connector(connection, client)
                except ValueError as e:
                    raise QuickSyncError(str(e))
                bulk_entity_types = connector.bulk_entity_types()

                try:
                    await asyncio.wait_for(
                        self.run_quick_sync(connection, connector, quick),
                        timeout=self.settings.quick_sync_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    clog.warning(
                        f"Quick sync hit the {self.settings.quick_sync_timeout_seconds}s limit; "
                        f"continuing with partial data"
                    )
                    connection.stage_metadata["mini_sync_partial"] = True
                    connection.stage_metadata["mini_sync_error"] = "timeout"
        except QuickSyncError as e:
            clog.error(f"Quick sync failed: {e}")
            self._mark_failed(connection, str(e))
            raise
        except ConnectionGoneError:
            clog.warning("Connection removed during quick sync")
            raise
        except Exception as e:
            # Never leave the connection stuck in QUICK_SYNC_RUNNING
            clog.exception(f"Quick sync crashed: {e}")
            self._mark_failed(connection, str(e))
            raise

        connection.sync_status = SyncStatus.BULK_IMPORTING
        connection.last_synced_at = utcnow()
        connection.stage_metadata.update({
            "sync_stage": "historical_import",
            "mini_sync_completed": True,
            "mini_sync_records": quick.written,
            "mini_sync_partial": connection.stage_metadata.get("mini_sync_partial", False),
            "bulk_jobs_started": [e.value for e in bulk_entity_types],
            "bulk_started_at": utcnow().isoformat(),
        })
        self.store.save_connection(connection)
        clog.info(f"Quick sync wrote {quick.written} rows; starting historical import")

        handle = SyncHandle(
            connection_id=connection.id,
            status=connection.sync_status,
            quick_sync=quick,
            quick_sync_partial=connection.stage_metadata["mini_sync_partial"],
            bulk_entity_types=bulk_entity_types,
        )

        self._active_imports.add(connection.id)
        if background_tasks is not None:
            background_tasks.add_task(self.run_historical_import, connection.id)
        else:
            task = asyncio.create_task(self.run_historical_import(connection.id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            handle.historical_task = task
        return handle

    async def run_quick_sync(
        self,
        connection: ConnectionState,
        connector: PlatformConnector,
        outcome: Optional[WriteOutcome] = None,
        days: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> WriteOutcome:
        """
        Collect and write every quick-sync request of the connector.

        Rate-limit or transient exhaustion and the page ceiling leave partial
        data and flag `metadata` (stage_metadata by default); a permanent
        error raises QuickSyncError after writing what was already collected.
        """
        outcome = outcome if outcome is not None else WriteOutcome()
        until = utcnow()
        since = until - timedelta(days=days or self.settings.quick_sync_days)
        clog = connection_log(connection.id, connection.platform)
        if metadata is None:
            metadata = connection.stage_metadata

        for request in connector.quick_sync_requests(since, until):
            result = await connector.collector().collect(request)
            if result.records:
                outcome.merge(self.writer.upsert_batch(connection.id, result.records))
            if result.decode_errors:
                metadata["mini_sync_decode_errors"] = metadata.get("mini_sync_decode_errors", 0) + len(result.decode_errors)

            if result.error is not None and result.error.is_permanent:
                raise QuickSyncError(
                    f"{request.label}: {result.error.message[:200]}",
                    status_code=result.error.status_code,
                )
            if not result.complete:
                reason = result.error.kind.value if result.error is not None else "page_limit"
                clog.warning(f"Quick sync for {request.label} is partial ({reason})")
                metadata["mini_sync_partial"] = True
                metadata["mini_sync_error"] = reason

        return outcome

    def _mark_failed(self, connection: ConnectionState, error: str):
        connection.sync_status = SyncStatus.FAILED
        connection.stage_metadata.update({
            "sync_stage": "failed",
            "mini_sync_completed": False,
            "mini_sync_error": error[:500],
            "sync_failed_at": utcnow().isoformat(),
        })
        try:
            self.store.save_connection(connection)
        except ConnectionGoneError:
            log.warning(f"Connection {connection.id} removed before failure could be recorded")

    # Phase 2

    async def _run_entities(
        self,
        entity_types: List[EntityType],
        run_one: Callable[[EntityType], Awaitable[ProcessingOutcome]]
    ) -> List[ProcessingOutcome]:
        """Run one coroutine per entity type concurrently; a crash becomes a FAILED outcome"""
        results = await asyncio.gather(*(run_one(e) for e in entity_types), return_exceptions=True)
        outcomes = []
        for entity_type, result in zip(entity_types, results):
            if isinstance(result, BaseException):
                log.opt(exception=result).error(f"{entity_type.value} import crashed: {result}")
                result = ProcessingOutcome(entity_type, BulkJobStatus.FAILED, error=str(result))
            outcomes.append(result)
        return outcomes

    async def run_historical_import(self, connection_id: int) -> List[ProcessingOutcome]:
        """One BulkJobOrchestrator per entity type, concurrently; then finalize the connection"""
        self._active_imports.add(connection_id)
        try:
            connection = self.store.get_connection(connection_id)
            if connection is None or connection.sync_status != SyncStatus.BULK_IMPORTING:
                log.warning(f"Connection {connection_id} is not importing; historical import skipped")
                return []

            async with self.client_factory() as client:
                connector = self._connector(connection, client)
                orchestrator = self._orchestrator(connection, connector)
                outcomes = await self._run_entities(connector.bulk_entity_types(), orchestrator.run)

            self._finalize(connection_id, outcomes)
            return outcomes
        finally:
            self._active_imports.discard(connection_id)

    async def resume_historical_import(self, connection_id: int) -> List[ProcessingOutcome]:
        """
        Pick up an import whose driving process died.

        Jobs still RUNNING are polled again, entity types that never got a job
        are submitted now, and jobs that already finished count as they ended.
        """
        if connection_id in self._active_imports:
            return []
        self._active_imports.add(connection_id)
        try:
            connection = self.store.get_connection(connection_id)
            if connection is None or connection.sync_status != SyncStatus.BULK_IMPORTING:
                return []

            started_at = parse_timestamp(connection.stage_metadata.get("bulk_started_at"))
            latest = {}
            for job in self.store.list_bulk_jobs(connection_id):
                if started_at and job.created_at and job.created_at < started_at:
                    continue  # from an earlier sync
                latest[job.entity_type] = job

            clog = connection_log(connection_id, connection.platform)
            clog.info(f"Resuming historical import ({len(latest)} jobs on record)")

            async with self.client_factory() as client:
                connector = self._connector(connection, client)
                orchestrator = self._orchestrator(connection, connector)

                async def resume_entity(entity_type: EntityType) -> ProcessingOutcome:
                    job = latest.get(entity_type)
                    if job is None:
                        return await orchestrator.run(entity_type)
                    if job.status.is_terminal:
                        return ProcessingOutcome(entity_type, job.status, job=job, error=job.error_code)
                    return await orchestrator.drive(job)

                outcomes = await self._run_entities(connector.bulk_entity_types(), resume_entity)

            self._finalize(connection_id, outcomes)
            return outcomes
        finally:
            self._active_imports.discard(connection_id)

    async def resume_orphaned_imports(self) -> Dict[int, str]:
        """Resume every BULK_IMPORTING connection this process is not already driving, concurrently"""
        orphaned = [
            connection.id
            for connection in self.store.list_connections(SyncStatus.BULK_IMPORTING)
            if connection.id not in self._active_imports
        ]
        finished = await asyncio.gather(
            *(self.resume_historical_import(connection_id) for connection_id in orphaned),
            return_exceptions=True,
        )

        results = {}
        for connection_id, result in zip(orphaned, finished):
            if isinstance(result, BaseException):
                log.opt(exception=result).error(f"Resuming connection {connection_id} crashed: {result}")
            refreshed = self.store.get_connection(connection_id)
            results[connection_id] = refreshed.sync_status.value if refreshed else "deleted"
        if results:
            log.info(f"Resumed {len(results)} orphaned imports: {results}")
        return results

    def _finalize(self, connection_id: int, outcomes: List[ProcessingOutcome]):
        connection = self.store.get_connection(connection_id)
        if connection is None:
            log.warning(f"Connection {connection_id} was deleted during historical import")
            return
        if connection.sync_status != SyncStatus.BULK_IMPORTING:
            log.warning(
                f"Connection {connection_id} moved to {connection.sync_status.value} during import; "
                f"leaving status unchanged"
            )
            return

        succeeded = all(o.succeeded for o in outcomes)
        now = utcnow()
        connection.stage_metadata["entity_results"] = {o.entity_type.value: o.to_dict() for o in outcomes}
        truncated = [o.entity_type.value for o in outcomes if o.truncated]
        if truncated:
            connection.stage_metadata["historical_truncated"] = truncated
        if succeeded:
            connection.sync_status = SyncStatus.COMPLETED
            connection.last_synced_at = now
            connection.stage_metadata["sync_stage"] = "completed"
            connection.stage_metadata["sync_completed_at"] = now.isoformat()
        else:
            connection.sync_status = SyncStatus.FAILED
            connection.stage_metadata["sync_stage"] = "failed"
            connection.stage_metadata["sync_failed_at"] = now.isoformat()

        try:
            self.store.save_connection(connection)
        except ConnectionGoneError:
            log.warning(f"Connection {connection_id} removed before final status could be saved")
            return

        clog = connection_log(connection_id, connection.platform)
        failed = [o.entity_type.value for o in outcomes if not o.succeeded]
        if failed:
            clog.error(f"Historical import finished FAILED (failed: {', '.join(failed)})")
        else:
            clog.info("Historical import finished COMPLETED")

    # Ongoing refresh

    async def refresh_connection(self, connection_id: int) -> Optional[WriteOutcome]:
        """
        Re-run quick sync over the trailing refresh window of a COMPLETED
        connection and return it to COMPLETED.

        The run goes through begin_sync, so it never overlaps another sync of
        the same connection. The result is kept in stage_metadata["last_refresh"];
        a failed refresh does not change the connection's status.

        Returns None for connections that have not completed a sync yet.

        Raises:
            ConnectionNotFoundError: unknown connection
            SyncAlreadyRunningError: another sync is active
        """
        current = self.store.get_connection(connection_id)
        if current is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        if current.sync_status != SyncStatus.COMPLETED and not current.sync_status.is_active:
            log.info(f"Connection {connection_id} is {current.sync_status.value}; refresh skipped")
            return None

        connection = self.store.begin_sync(connection_id)
        clog = connection_log(connection.id, connection.platform)
        days = self.settings.refresh_window_days
        clog.info(f"Refreshing the last {days} days")

        outcome = WriteOutcome()
        progress: Dict[str, Any] = {}
        try:
            async with self.client_factory() as client:
                connector = self._connector(connection, client)
                await self.run_quick_sync(connection, connector, outcome, days=days, metadata=progress)
        except ConnectionGoneError:
            clog.warning("Connection removed during refresh")
            raise
        except Exception as e:
            clog.error(f"Refresh failed: {e}")
            self._finish_refresh(connection, outcome, progress, error=str(e))
            raise

        self._finish_refresh(connection, outcome, progress)
        clog.info(f"Refresh wrote {outcome.written} rows")
        return outcome

    def _finish_refresh(
        self,
        connection: ConnectionState,
        outcome: WriteOutcome,
        progress: Dict[str, Any],
        error: Optional[str] = None
    ):
        now = utcnow()
        connection.sync_status = SyncStatus.COMPLETED
        if error is None:
            connection.last_synced_at = now
        connection.stage_metadata["last_refresh"] = {
            "finished_at": now.isoformat(),
            "window_days": self.settings.refresh_window_days,
            "records": outcome.written,
            "partial": progress.get("mini_sync_partial", False),
            "decode_errors": progress.get("mini_sync_decode_errors", 0),
            "error": error[:500] if error else progress.get("mini_sync_error"),
        }
        try:
            self.store.save_connection(connection)
        except ConnectionGoneError:
            log.warning(f"Connection {connection.id} removed before refresh result could be saved")

    async def refresh_connections(self) -> Dict[int, str]:
        """Refresh every COMPLETED connection concurrently; returns {connection_id: result}"""
        connection_ids = [c.id for c in self.store.list_connections(SyncStatus.COMPLETED)]
        results = await asyncio.gather(
            *(self.refresh_connection(connection_id) for connection_id in connection_ids),
            return_exceptions=True,
        )

        summary = {}
        for connection_id, result in zip(connection_ids, results):
            if isinstance(result, SyncAlreadyRunningError):
                summary[connection_id] = "skipped"
            elif isinstance(result, (ConnectionGoneError, ConnectionNotFoundError)):
                summary[connection_id] = "deleted"
            elif isinstance(result, BaseException):
                summary[connection_id] = "failed"
            else:
                summary[connection_id] = "refreshed" if result is not None else "skipped"
        if summary:
            log.info(f"Refreshed {len(summary)} connections: {summary}")
        return summary

    # Status

    def get_sync_status(self, connection_id: int) -> Dict[str, Any]:
        connection = self.store.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        return {
            "connection_id": connection.id,
            "platform": connection.platform,
            "status": connection.sync_status.value,
            "stage_metadata": connection.stage_metadata,
            "last_synced_at": connection.last_synced_at.isoformat() if connection.last_synced_at else None,
            "active": connection.sync_status.is_active,
            "jobs": self.list_jobs(connection_id),
        }

    def list_jobs(self, connection_id: int) -> List[Dict[str, Any]]:
        if self.store.get_connection(connection_id) is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        return [
            {
                "id": job.id,
                "entity_type": job.entity_type.value,
                "remote_job_id": job.remote_job_id,
                "status": job.status.value,
                "error_code": job.error_code,
                "records_processed": job.records_processed,
                "records_failed": job.records_failed,
                "created_at": job.created_at.isoformat() if job.created_at else None,
                "completed_at": job.completed_at.isoformat() if job.completed_at else None,
            }
            for job in self.store.list_bulk_jobs(connection_id)
        ]


# Lazy-init so importing the router does not touch the database
_controller: Optional[ConnectionSyncController] = None


def get_sync_controller() -> ConnectionSyncController:
    """Process-wide controller (API and scheduler share its in-flight bookkeeping)"""
    global _controller
    if _controller is None:
        from app.storage.sql import SqlSyncStore
        _controller = ConnectionSyncController(SqlSyncStore())
    return _controller
