"""
Paginated collector

Follows a vendor's "next" cursor through a list endpoint. The page ceiling
is a circuit breaker against cursors that never end; hitting it returns what
was collected and flags the result as truncated.
"""
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, List, Optional

import httpx

from app.connectors.fetcher import FetchError, FetchRequest, RateLimitedFetcher
from app.sync.types import DecodeFailure, FetchedRecord
from app.utils.logger import log


@dataclass
class ParsedPage:
    """What a connector extracts from one list response"""
    records: List[FetchedRecord] = field(default_factory=list)
    next_request: Optional[FetchRequest] = None
    decode_errors: List[DecodeFailure] = field(default_factory=list)
    # Raw payloads, for callers that decode later (bulk result pages)
    items: List[Any] = field(default_factory=list)


# Connector hook: (response, request that produced it) -> ParsedPage
PageParser = Callable[[httpx.Response, FetchRequest], ParsedPage]


@dataclass
class CollectionResult:
    records: List[FetchedRecord] = field(default_factory=list)
    pages_fetched: int = 0
    truncated: bool = False
    error: Optional[FetchError] = None
    decode_errors: List[DecodeFailure] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.truncated and self.error is None


class PaginatedCollector:
    """Cursor-following page walker with a hard page ceiling"""

    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        parse_page: PageParser,
        max_pages: int = 10
    ):
        self.fetcher = fetcher
        self.parse_page = parse_page
        self.max_pages = max(1, max_pages)

    async def iter_pages(self, first_request: FetchRequest, result: CollectionResult) -> AsyncIterator[ParsedPage]:
        """
        Yield parsed pages until the cursor runs out, a fetch fails or the
        ceiling is reached. Progress is recorded on `result` as pages arrive
        so a consumer that stops early still sees accurate counts.
        """
        request: Optional[FetchRequest] = first_request

        while request is not None:
            if result.pages_fetched >= self.max_pages:
                result.truncated = True
                log.warning(
                    f"Pagination ceiling of {self.max_pages} pages reached for {request.label}; "
                    f"returning partial results"
                )
                return

            fetched = await self.fetcher.fetch(request)
            if not fetched.ok:
                result.error = fetched.error
                log.warning(
                    f"Pagination stopped after {result.pages_fetched} pages for {request.label}: "
                    f"{fetched.error!r}"
                )
                return

            try:
                page = self.parse_page(fetched.response, request)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                # Unreadable page body; nothing on it can be trusted, but earlier pages stand
                result.pages_fetched += 1
                result.decode_errors.append(DecodeFailure(source=request.url, message=str(e)))
                log.error(f"Could not parse page {result.pages_fetched} of {request.label}: {e}")
                return

            result.pages_fetched += 1
            result.decode_errors.extend(page.decode_errors)
            yield page
            request = page.next_request

    async def iter_records(self, first_request: FetchRequest) -> AsyncIterator[FetchedRecord]:
        """Lazy, finite record stream; not restartable"""
        result = CollectionResult()
        async for page in self.iter_pages(first_request, result):
            for record in page.records:
                yield record

    async def collect(self, first_request: FetchRequest) -> CollectionResult:
        result = CollectionResult()
        async for page in self.iter_pages(first_request, result):
            result.records.extend(page.records)

        log.info(
            f"Collected {len(result.records)} records from {result.pages_fetched} pages "
            f"({first_request.label}, truncated={result.truncated}, "
            f"decode_errors={len(result.decode_errors)}, error={result.error is not None})"
        )
        return result
