"""
Meta Ads Connector

Daily insights from the Graph API. Quick sync pulls the recent window at
ad level (GRANULAR rows) and at account level (AGGREGATE rows stored under
the reserved ad id `account_level_data`). The historical import runs an
asynchronous insights report and pages through its results.
"""
import dataclasses
import json
from datetime import date, datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from app.connectors.base import BulkExportClient, PlatformConnector
from app.connectors.fetcher import FetchRequest
from app.connectors.pagination import CollectionResult, PaginatedCollector, ParsedPage
from app.sync.errors import BulkSubmitError
from app.sync.types import (
    BulkJobStatus,
    DecodeFailure,
    EntityType,
    FetchedRecord,
    Granularity,
    RemoteJobStatus,
)
from app.utils.helpers import parse_date, to_float, to_int
from app.utils.logger import log
from app.utils.retry import FetchErrorKind

ACCOUNT_LEVEL_AD_ID = "account_level_data"

GRAPH_BASE_URL = "https://graph.facebook.com"

AD_LEVEL_FIELDS = [
    "account_id", "campaign_id", "campaign_name", "adset_id", "adset_name",
    "ad_id", "ad_name", "impressions", "clicks", "spend", "reach", "ctr", "cpc",
    "actions", "action_values", "date_start",
]
ACCOUNT_LEVEL_FIELDS = [
    "account_id", "impressions", "clicks", "spend", "reach", "ctr", "cpc",
    "actions", "action_values", "date_start",
]

# Graph API error codes that mean "slow down"
# 4: app-level, 17: user-level (subcode 2446079 for ad accounts),
# 32: page-level, 613: custom-level, 80004: ads management throttling
RATE_LIMIT_ERROR_CODES = {4, 17, 32, 613, 80004}
TRANSIENT_ERROR_CODES = {1, 2}

PURCHASE_ACTION_TYPES = ("purchase", "omni_purchase", "offsite_conversion.fb_pixel_purchase")

# async_status of an insights report run
REPORT_STATUS_MAP = {
    "Job Completed": BulkJobStatus.COMPLETED,
    "Job Failed": BulkJobStatus.FAILED,
    "Job Skipped": BulkJobStatus.CANCELED,
}


def _action_value(actions: Optional[List[Dict]]) -> Optional[float]:
    """First purchase-type entry in an actions/action_values list"""
    if not isinstance(actions, list):
        return None
    by_type = {a.get("action_type"): a.get("value") for a in actions if isinstance(a, dict)}
    for action_type in PURCHASE_ACTION_TYPES:
        if action_type in by_type:
            return to_float(by_type[action_type])
    return None


def decode_insight_row(row: Dict[str, Any], level: str) -> FetchedRecord:
    """
    One insights row -> one ad_daily_insights record.

    Ad-level rows are GRANULAR; account-level rows are AGGREGATE and keyed
    by the reserved ad id so both kinds share the (ad_id, date) key.
    """
    day = parse_date(row["date_start"])
    if level == "ad":
        ad_id = str(row["ad_id"])
        granularity = Granularity.GRANULAR
    else:
        ad_id = ACCOUNT_LEVEL_AD_ID
        granularity = Granularity.AGGREGATE

    purchases = _action_value(row.get("actions"))

    return FetchedRecord(
        entity_type=EntityType.AD_INSIGHTS,
        natural_key=(ad_id, day),
        granularity=granularity,
        slot_date=day,
        data={
            "ad_id": ad_id,
            "date": day,
            "granularity": granularity.value,
            "account_id": row.get("account_id"),
            "campaign_id": row.get("campaign_id"),
            "campaign_name": row.get("campaign_name"),
            "adset_id": row.get("adset_id"),
            "adset_name": row.get("adset_name"),
            "ad_name": row.get("ad_name"),
            "spend": to_float(row.get("spend"), 0.0),
            "impressions": to_int(row.get("impressions"), 0),
            "clicks": to_int(row.get("clicks"), 0),
            "reach": to_int(row.get("reach")),
            "ctr": to_float(row.get("ctr")),
            "cpc": to_float(row.get("cpc")),
            "purchases": int(purchases) if purchases is not None else 0,
            "purchase_value": _action_value(row.get("action_values")) or 0.0,
        },
    )


def _request_level(request: FetchRequest) -> str:
    """Insights level of a request; cursor URLs carry it in the query string"""
    level = (request.params or {}).get("level")
    if level:
        return level
    return httpx.URL(request.url).params.get("level", "ad")


class MetaAdsConnector(PlatformConnector):
    """
    Connector for the Meta Marketing API

    `account_ref` is the ad account id (with or without the `act_` prefix)
    and the credential handle is the access token.
    """

    platform = "meta"

    @property
    def account_id(self) -> str:
        ref = self.connection.account_ref
        return ref if ref.startswith("act_") else f"act_{ref}"

    @property
    def graph_url(self) -> str:
        return f"{GRAPH_BASE_URL}/{self.settings.meta_api_version}"

    def classify_response(self, response: httpx.Response) -> Optional[FetchErrorKind]:
        """
        Graph API errors arrive as {"error": {"code": 17, "message": ...}},
        usually with HTTP 400, so the code decides the kind.
        """
        try:
            body = response.json()
        except ValueError:
            return None
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            return None

        code = error.get("code")
        message = (error.get("message") or "").lower()
        if code in RATE_LIMIT_ERROR_CODES or "too many calls" in message:
            return FetchErrorKind.RATE_LIMITED
        if code in TRANSIENT_ERROR_CODES or error.get("is_transient"):
            return FetchErrorKind.TRANSIENT_NETWORK
        if response.status_code == 200:
            return FetchErrorKind.PERMANENT
        return None

    def _insights_request(self, level: str, since: date, until: date) -> FetchRequest:
        fields = AD_LEVEL_FIELDS if level == "ad" else ACCOUNT_LEVEL_FIELDS
        return FetchRequest(
            url=f"{self.graph_url}/{self.account_id}/insights",
            params={
                "level": level,
                "fields": ",".join(fields),
                "time_range": json.dumps({"since": since.isoformat(), "until": until.isoformat()}),
                "time_increment": 1,
                "limit": 500,
                "access_token": self.credential,
            },
            credential=self.credential,
            label=f"meta insights level={level}",
        )

    def quick_sync_requests(self, since: datetime, until: datetime) -> List[FetchRequest]:
        # Ad level first so account-level rows for the same dates are dominated
        return [
            self._insights_request("ad", since.date(), until.date()),
            self._insights_request("account", since.date(), until.date()),
        ]

    def parse_page(self, response: httpx.Response, request: FetchRequest) -> ParsedPage:
        body = response.json()
        rows = body.get("data") if isinstance(body, dict) else None
        if not isinstance(rows, list):
            raise ValueError("Response has no data list")

        level = _request_level(request)
        page = ParsedPage(items=rows)
        for row in rows:
            try:
                page.records.append(decode_insight_row(row, level))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                log.warning(f"Skipping undecodable Meta insights row: {e}")
                page.decode_errors.append(DecodeFailure(source=f"insights:{level}", message=str(e)))

        next_url = (body.get("paging") or {}).get("next")
        if next_url:
            page.next_request = dataclasses.replace(request, url=next_url, params=None)
        return page

    def bulk_entity_types(self) -> List[EntityType]:
        return [EntityType.AD_INSIGHTS]

    def bulk_client(self) -> "MetaInsightsBulkClient":
        return MetaInsightsBulkClient(self)


class MetaInsightsBulkClient(BulkExportClient):
    """Asynchronous insights report runs (POST act_<id>/insights)"""

    def __init__(self, connector: MetaAdsConnector):
        self.connector = connector

    async def submit(self, entity_type: EntityType) -> RemoteJobStatus:
        if entity_type != EntityType.AD_INSIGHTS:
            raise BulkSubmitError(f"Meta has no bulk export for {entity_type.value}")

        settings = self.connector.settings
        until = datetime.utcnow().date()
        since = until - timedelta(days=settings.meta_insights_lookback_days)
        request = self.connector._insights_request("ad", since, until)
        request = dataclasses.replace(request, method="POST", idempotent=False, label="meta insights report run")

        result = await self.connector.fetcher.fetch(request)
        if not result.ok:
            raise BulkSubmitError(f"Insights report request failed: {result.error.message}")

        report_run_id = (result.json() or {}).get("report_run_id")
        if not report_run_id:
            raise BulkSubmitError(f"Meta returned no report_run_id: {result.response.text[:300]}")

        log.info(f"Started Meta insights report {report_run_id} for {self.connector.account_id}")
        return RemoteJobStatus(job_id=str(report_run_id), status=BulkJobStatus.RUNNING)

    async def get_status(self, remote_job_id: str) -> RemoteJobStatus:
        result = await self.connector.fetcher.fetch(FetchRequest(
            url=f"{self.connector.graph_url}/{remote_job_id}",
            params={"access_token": self.connector.credential},
            credential=self.connector.credential,
            label="meta report status",
        ))
        if not result.ok:
            raise result.error

        body = result.json() or {}
        async_status = body.get("async_status")
        status = REPORT_STATUS_MAP.get(async_status, BulkJobStatus.RUNNING)
        return RemoteJobStatus(
            job_id=remote_job_id,
            status=status,
            result_url=f"{self.connector.graph_url}/{remote_job_id}/insights",
            error_code=async_status if status in (BulkJobStatus.FAILED, BulkJobStatus.CANCELED) else None,
        )

    async def iter_result_lines(self, status: RemoteJobStatus) -> AsyncIterator[str]:
        """Page through the report's rows, emitting each as one JSON line"""
        collector = PaginatedCollector(
            self.connector.fetcher,
            self.connector.parse_page,
            max_pages=self.connector.settings.bulk_result_max_pages,
        )
        first = FetchRequest(
            url=status.result_url or f"{self.connector.graph_url}/{status.job_id}/insights",
            params={"level": "ad", "limit": 500, "access_token": self.connector.credential},
            credential=self.connector.credential,
            label="meta report results",
        )

        progress = CollectionResult()
        async for page in collector.iter_pages(first, progress):
            for row in page.items:
                yield json.dumps(row)

        if progress.error is not None:
            raise progress.error
        if progress.truncated:
            status.truncated = True
            log.warning(
                f"Meta report {status.job_id} has more than {collector.max_pages} result pages; "
                f"later rows were not imported"
            )

    def decode_line(self, entity_type: EntityType, payload: Dict[str, Any]) -> List[FetchedRecord]:
        return [decode_insight_row(payload, "ad")]
