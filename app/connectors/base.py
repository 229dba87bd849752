"""
Base Connector Classes

Every platform connector provides two things to the sync pipeline:
- the quick-sync list requests and a page parser for them
- a bulk-export client for the historical import

Connectors never write to storage; they only build requests and decode
vendor payloads into FetchedRecords.
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx

from app.config import Settings, get_settings
from app.connectors.fetcher import CredentialGate, FetchRequest, RateLimitedFetcher
from app.connectors.pagination import PaginatedCollector, ParsedPage
from app.sync.types import ConnectionState, EntityType, FetchedRecord, RemoteJobStatus
from app.utils.retry import FetchErrorKind, RetryPolicy


class BulkExportClient(ABC):
    """
    Vendor asynchronous bulk-export API.

    `get_status` and `iter_result_lines` raise FetchError on remote failure;
    `submit` raises BulkSubmitError; `decode_line` raises ValueError (or
    KeyError/TypeError) for a line that cannot be decoded.
    """

    @abstractmethod
    async def submit(self, entity_type: EntityType) -> RemoteJobStatus:
        pass

    @abstractmethod
    async def get_status(self, remote_job_id: str) -> RemoteJobStatus:
        pass

    @abstractmethod
    def iter_result_lines(self, status: RemoteJobStatus) -> AsyncIterator[str]:
        pass

    @abstractmethod
    def decode_line(self, entity_type: EntityType, payload: Dict[str, Any]) -> List[FetchedRecord]:
        pass


class PlatformConnector(ABC):
    """
    Base class for platform connectors

    Args:
        connection: Connection being synced (credential_handle is used as the token)
        client: Shared httpx client
        settings: Settings override (tests)
        gate: Per-credential in-flight cap (defaults to the process-wide gate)
        sleep: Injectable sleep for retry backoff
    """

    platform: str = ""

    def __init__(
        self,
        connection: ConnectionState,
        client: httpx.AsyncClient,
        settings: Optional[Settings] = None,
        gate: Optional[CredentialGate] = None,
        sleep: Callable[[float], Any] = asyncio.sleep
    ):
        self.connection = connection
        self.client = client
        self.settings = settings or get_settings()
        self.fetcher = RateLimitedFetcher(
            client,
            policy=RetryPolicy.from_settings(self.settings),
            gate=gate,
            vendor_classifier=self.classify_response,
            sleep=sleep,
            name=self.platform,
        )

    @property
    def credential(self) -> str:
        return self.connection.credential_handle

    def classify_response(self, response: httpx.Response) -> Optional[FetchErrorKind]:
        """Vendor-specific error detection; None defers to the HTTP status"""
        return None

    def collector(self, max_pages: Optional[int] = None) -> PaginatedCollector:
        return PaginatedCollector(
            self.fetcher,
            self.parse_page,
            max_pages=max_pages or self.settings.pagination_max_pages,
        )

    @abstractmethod
    def quick_sync_requests(self, since: datetime, until: datetime) -> List[FetchRequest]:
        """First-page requests covering the recent window, in write order"""
        pass

    @abstractmethod
    def parse_page(self, response: httpx.Response, request: FetchRequest) -> ParsedPage:
        """Decode one list page; raise ValueError if the body is unreadable"""
        pass

    @abstractmethod
    def bulk_entity_types(self) -> List[EntityType]:
        """Entity types exported by the historical import (one bulk job each)"""
        pass

    @abstractmethod
    def bulk_client(self) -> BulkExportClient:
        pass
