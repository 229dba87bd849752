"""
End-to-end tests for ConnectionSyncController against fake Shopify and Meta
APIs (httpx.MockTransport): quick sync, detached historical import,
single-active-sync rule, failure isolation and resume after restart.
"""
import asyncio
import json

import httpx
import pytest

from app.connectors.fetcher import CredentialGate
from app.connectors.meta_ads import ACCOUNT_LEVEL_AD_ID
from app.services.bulk_job_orchestrator import PollPolicy
from app.services.connection_sync import ConnectionSyncController
from app.sync.errors import ConnectionNotFoundError, QuickSyncError, SyncAlreadyRunningError
from app.sync.types import BulkJob, BulkJobStatus, EntityType, Granularity, SyncStatus
from app.utils.helpers import utcnow

from tests.conftest import SleepRecorder, mock_client, run


def gid_order(order_id):
    return json.dumps({"id": f"gid://shopify/Order/{order_id}", "name": f"#{1000 + order_id}"})


class FakeShopify:
    """Admin REST orders.json, GraphQL bulk operations and the result file host"""

    def __init__(self, recent_orders, bulk_lines, bulk_status=None, orders_error=None):
        self.recent_orders = recent_orders
        self.bulk_lines = bulk_lines
        self.bulk_status = bulk_status or {}
        # (status, json body) served for orders.json instead of the orders
        self.orders_error = orders_error
        self.submitted = []

    def __call__(self, request: httpx.Request):
        path = request.url.path

        if path.endswith("/orders.json"):
            if self.orders_error is not None:
                status, body = self.orders_error
                return httpx.Response(status, json=body)
            return httpx.Response(200, json={"orders": [
                {"id": order_id, "name": f"#{1000 + order_id}", "total_price": "10.00"}
                for order_id in self.recent_orders
            ]})

        if path.endswith("/graphql.json"):
            body = json.loads(request.content)
            if "bulkOperationRunQuery" in body["query"]:
                entity = self._entity(body["variables"]["query"])
                self.submitted.append(entity)
                return httpx.Response(200, json={"data": {"bulkOperationRunQuery": {
                    "bulkOperation": {"id": f"gid://shopify/BulkOperation/{entity}", "status": "CREATED"},
                    "userErrors": [],
                }}})
            operation_id = body["variables"]["id"]
            entity = operation_id.rsplit("/", 1)[-1]
            status = self.bulk_status.get(entity, "COMPLETED")
            return httpx.Response(200, json={"data": {"node": {
                "id": operation_id,
                "status": status,
                "errorCode": "ACCESS_DENIED" if status == "FAILED" else None,
                "objectCount": str(len(self.bulk_lines.get(entity, []))),
                "url": f"https://storage.example/{entity}.jsonl" if status == "COMPLETED" else None,
            }}})

        if request.url.host == "storage.example":
            entity = path.strip("/").split(".")[0]
            return httpx.Response(200, text="\n".join(self.bulk_lines.get(entity, [])))

        return httpx.Response(404)

    @staticmethod
    def _entity(query):
        for entity in ("customers", "products", "orders"):
            if f"{entity} {{" in query:
                return entity
        raise AssertionError(f"unexpected bulk query {query}")


def _controller(store, vendor, settings):
    return ConnectionSyncController(
        store,
        client_factory=lambda: mock_client(vendor),
        settings=settings,
        gate=CredentialGate(4),
        poll_policy=PollPolicy(initial_interval=0, step=0, max_interval=0, max_polls=5),
        sleep=SleepRecorder(),
    )


async def start_and_wait(controller, connection_id):
    handle = await controller.start_sync(connection_id)
    outcomes = await handle.historical_task
    return handle, outcomes


@pytest.fixture
def shopify_vendor():
    return FakeShopify(
        recent_orders=[1, 2, 3],
        bulk_lines={
            "orders": [gid_order(i) for i in (1, 2, 3, 4)] + [
                json.dumps({"id": "gid://shopify/LineItem/41", "quantity": 1, "__parentId": "gid://shopify/Order/4"}),
            ],
            "customers": [json.dumps({"id": "gid://shopify/Customer/7", "email": "a@example.com"})],
            "products": [
                json.dumps({"id": "gid://shopify/Product/5", "title": "Widget"}),
                json.dumps({"id": "gid://shopify/ProductVariant/51", "__parentId": "gid://shopify/Product/5"}),
            ],
        },
    )


class TestShopifySync:

    def test_quick_sync_and_bulk_import_store_each_order_once(self, store, shopify_connection, shopify_vendor, settings):
        """O1-O3 from quick sync plus O1-O4 from bulk leaves 4 orders, not 7"""
        controller = _controller(store, shopify_vendor, settings)

        handle, outcomes = run(start_and_wait(controller, shopify_connection.id))

        assert handle.quick_sync.inserted == 3
        assert handle.status == SyncStatus.BULK_IMPORTING
        assert sorted(shopify_vendor.submitted) == ["customers", "orders", "products"]
        assert all(o.succeeded for o in outcomes)

        assert store.count_rows(shopify_connection.id, EntityType.ORDERS) == 4
        assert store.count_rows(shopify_connection.id, EntityType.LINE_ITEMS) == 1
        assert store.count_rows(shopify_connection.id, EntityType.CUSTOMERS) == 1
        assert store.count_rows(shopify_connection.id, EntityType.PRODUCTS) == 1

        connection = store.get_connection(shopify_connection.id)
        assert connection.sync_status == SyncStatus.COMPLETED
        assert connection.last_synced_at is not None
        assert connection.stage_metadata["mini_sync_records"] == 3
        assert connection.stage_metadata["sync_stage"] == "completed"
        assert set(connection.stage_metadata["entity_results"]) == {"orders", "customers", "products"}

    def test_second_start_while_active_is_rejected(self, store, shopify_connection, shopify_vendor, settings):
        controller = _controller(store, shopify_vendor, settings)

        async def scenario():
            handle = await controller.start_sync(shopify_connection.id)
            with pytest.raises(SyncAlreadyRunningError):
                await controller.start_sync(shopify_connection.id)
            await handle.historical_task

        run(scenario())

        assert store.get_connection(shopify_connection.id).sync_status == SyncStatus.COMPLETED
        assert len(store.list_bulk_jobs(shopify_connection.id)) == 3

    def test_completed_connection_can_sync_again(self, store, shopify_connection, shopify_vendor, settings):
        controller = _controller(store, shopify_vendor, settings)

        run(start_and_wait(controller, shopify_connection.id))
        handle, _ = run(start_and_wait(controller, shopify_connection.id))

        assert handle.quick_sync.updated == 3
        assert store.count_rows(shopify_connection.id, EntityType.ORDERS) == 4
        assert store.get_connection(shopify_connection.id).sync_status == SyncStatus.COMPLETED

    def test_unknown_connection(self, store, shopify_vendor, settings):
        controller = _controller(store, shopify_vendor, settings)

        with pytest.raises(ConnectionNotFoundError):
            run(controller.start_sync(999))

    def test_permanent_quick_sync_failure(self, store, shopify_connection, shopify_vendor, settings):
        shopify_vendor.orders_error = (401, {"errors": "Invalid API key or access token"})
        controller = _controller(store, shopify_vendor, settings)

        with pytest.raises(QuickSyncError) as exc_info:
            run(controller.start_sync(shopify_connection.id))

        assert exc_info.value.status_code == 401
        connection = store.get_connection(shopify_connection.id)
        assert connection.sync_status == SyncStatus.FAILED
        assert connection.stage_metadata["mini_sync_completed"] is False
        assert shopify_vendor.submitted == []

    def test_rate_limited_quick_sync_is_partial_and_proceeds(self, store, shopify_connection, shopify_vendor, settings):
        shopify_vendor.orders_error = (429, {"errors": "Exceeded 2 calls per second"})
        controller = _controller(store, shopify_vendor, settings)

        handle, _ = run(start_and_wait(controller, shopify_connection.id))

        assert handle.quick_sync_partial
        connection = store.get_connection(shopify_connection.id)
        assert connection.stage_metadata["mini_sync_error"] == "rate_limited"
        assert connection.sync_status == SyncStatus.COMPLETED
        assert store.count_rows(shopify_connection.id, EntityType.ORDERS) == 4

    def test_quick_sync_timeout_is_partial(self, store, shopify_connection, shopify_vendor, settings):
        async def slow_orders(request):
            if request.url.path.endswith("/orders.json"):
                await asyncio.sleep(5)
            return shopify_vendor(request)

        settings.quick_sync_timeout_seconds = 0.05
        controller = _controller(store, slow_orders, settings)

        handle, _ = run(start_and_wait(controller, shopify_connection.id))

        assert handle.quick_sync_partial
        assert handle.quick_sync.written == 0
        connection = store.get_connection(shopify_connection.id)
        assert connection.stage_metadata["mini_sync_error"] == "timeout"
        assert connection.sync_status == SyncStatus.COMPLETED

    def test_failed_entity_fails_connection_but_keeps_sibling_data(self, store, shopify_connection, shopify_vendor, settings):
        shopify_vendor.bulk_status = {"customers": "FAILED"}
        controller = _controller(store, shopify_vendor, settings)

        _, outcomes = run(start_and_wait(controller, shopify_connection.id))

        by_entity = {o.entity_type: o for o in outcomes}
        assert by_entity[EntityType.CUSTOMERS].status == BulkJobStatus.FAILED
        assert by_entity[EntityType.ORDERS].succeeded
        assert by_entity[EntityType.PRODUCTS].succeeded

        connection = store.get_connection(shopify_connection.id)
        assert connection.sync_status == SyncStatus.FAILED
        assert connection.stage_metadata["entity_results"]["customers"]["error"] == "ACCESS_DENIED"
        assert store.count_rows(shopify_connection.id, EntityType.ORDERS) == 4
        assert store.count_rows(shopify_connection.id, EntityType.PRODUCTS) == 1

    def test_failed_entity_writes_are_counted_not_fatal(self, store, shopify_connection, shopify_vendor, settings):
        store.fail_upserts_for = {EntityType.PRODUCTS}
        controller = _controller(store, shopify_vendor, settings)

        _, outcomes = run(start_and_wait(controller, shopify_connection.id))

        products = next(o for o in outcomes if o.entity_type == EntityType.PRODUCTS)
        assert products.succeeded
        assert products.write.failed == 1
        assert store.count_rows(shopify_connection.id, EntityType.ORDERS) == 4

    def test_deleted_connection_skips_historical_import(self, store, shopify_connection, shopify_vendor, settings):
        controller = _controller(store, shopify_vendor, settings)

        async def scenario():
            handle = await controller.start_sync(shopify_connection.id)
            store.delete_connection(shopify_connection.id)
            return await handle.historical_task

        outcomes = run(scenario())

        assert outcomes == []
        assert shopify_vendor.submitted == []

    def test_status_lists_jobs(self, store, shopify_connection, shopify_vendor, settings):
        controller = _controller(store, shopify_vendor, settings)
        run(start_and_wait(controller, shopify_connection.id))

        status = controller.get_sync_status(shopify_connection.id)

        assert status["status"] == "COMPLETED"
        assert not status["active"]
        assert {j["entity_type"] for j in status["jobs"]} == {"orders", "customers", "products"}
        assert all(j["status"] == "COMPLETED" for j in status["jobs"])

        with pytest.raises(ConnectionNotFoundError):
            controller.get_sync_status(999)


class TestResume:

    def test_resume_reattaches_running_job_and_submits_missing(self, store, importing_connection, shopify_vendor, settings):
        importing_connection.stage_metadata = {"bulk_started_at": "2026-01-01T00:00:00"}
        store.save_connection(importing_connection)
        store.create_bulk_job(BulkJob(
            connection_id=importing_connection.id,
            entity_type=EntityType.ORDERS,
            remote_job_id="gid://shopify/BulkOperation/orders",
            status=BulkJobStatus.RUNNING,
            created_at=utcnow(),
        ))
        controller = _controller(store, shopify_vendor, settings)

        results = run(controller.resume_orphaned_imports())

        assert results == {importing_connection.id: "COMPLETED"}
        # Orders were already running remotely; only the others are submitted
        assert sorted(shopify_vendor.submitted) == ["customers", "products"]
        jobs = store.list_bulk_jobs(importing_connection.id)
        assert len(jobs) == 3
        assert all(j.status == BulkJobStatus.COMPLETED for j in jobs)
        assert store.count_rows(importing_connection.id, EntityType.ORDERS) == 4

    def test_resume_ignores_connections_not_importing(self, store, shopify_connection, shopify_vendor, settings):
        controller = _controller(store, shopify_vendor, settings)

        assert run(controller.resume_orphaned_imports()) == {}
        assert run(controller.resume_historical_import(shopify_connection.id)) == []

    def test_orphaned_imports_resume_concurrently(self, store, importing_connection, shopify_vendor, settings):
        second = store.create_connection(
            platform="shopify",
            account_ref="other-store.myshopify.com",
            credential_handle="shpat_other",
        )
        second.sync_status = SyncStatus.BULK_IMPORTING
        store.save_connection(second)
        controller = _controller(store, shopify_vendor, settings)
        events = []

        async def recording_resume(connection_id):
            events.append(("start", connection_id))
            await asyncio.sleep(0.01)
            events.append(("end", connection_id))
            return []

        controller.resume_historical_import = recording_resume

        results = run(controller.resume_orphaned_imports())

        assert set(results) == {importing_connection.id, second.id}
        assert [kind for kind, _ in events[:2]] == ["start", "start"]


class TestRefresh:

    def test_completed_connection_refreshes_recent_window(self, store, shopify_connection, shopify_vendor, settings):
        controller = _controller(store, shopify_vendor, settings)
        run(start_and_wait(controller, shopify_connection.id))
        shopify_vendor.recent_orders = [1, 2, 3, 9]

        results = run(controller.refresh_connections())

        assert results == {shopify_connection.id: "refreshed"}
        assert store.count_rows(shopify_connection.id, EntityType.ORDERS) == 5
        connection = store.get_connection(shopify_connection.id)
        assert connection.sync_status == SyncStatus.COMPLETED
        assert connection.stage_metadata["last_refresh"]["records"] == 4
        assert connection.stage_metadata["last_refresh"]["window_days"] == settings.refresh_window_days
        assert connection.stage_metadata["last_refresh"]["error"] is None
        # Historical import results survive the refresh
        assert set(connection.stage_metadata["entity_results"]) == {"orders", "customers", "products"}

    def test_refresh_never_overlaps_an_active_sync(self, store, importing_connection, shopify_vendor, settings):
        controller = _controller(store, shopify_vendor, settings)

        with pytest.raises(SyncAlreadyRunningError):
            run(controller.refresh_connection(importing_connection.id))

        assert store.get_connection(importing_connection.id).sync_status == SyncStatus.BULK_IMPORTING

    def test_never_synced_connection_is_skipped(self, store, shopify_connection, shopify_vendor, settings):
        controller = _controller(store, shopify_vendor, settings)

        assert run(controller.refresh_connection(shopify_connection.id)) is None
        assert run(controller.refresh_connections()) == {}
        assert store.get_connection(shopify_connection.id).sync_status == SyncStatus.NOT_STARTED

    def test_failed_refresh_keeps_connection_completed(self, store, shopify_connection, shopify_vendor, settings):
        controller = _controller(store, shopify_vendor, settings)
        run(start_and_wait(controller, shopify_connection.id))
        synced_at = store.get_connection(shopify_connection.id).last_synced_at
        shopify_vendor.orders_error = (401, {"errors": "Invalid API key or access token"})

        results = run(controller.refresh_connections())

        assert results == {shopify_connection.id: "failed"}
        connection = store.get_connection(shopify_connection.id)
        assert connection.sync_status == SyncStatus.COMPLETED
        assert connection.last_synced_at == synced_at
        assert "Invalid API key" in connection.stage_metadata["last_refresh"]["error"]
        assert store.count_rows(shopify_connection.id, EntityType.ORDERS) == 4

    def test_unknown_connection(self, store, shopify_vendor, settings):
        controller = _controller(store, shopify_vendor, settings)

        with pytest.raises(ConnectionNotFoundError):
            run(controller.refresh_connection(999))



# ────────────────────────────────────────────
# META
# ────────────────────────────────────────────


class FakeMeta:
    """Graph API insights (sync and async report runs)"""

    def __init__(self, ad_rows, account_rows, report_rows):
        self.ad_rows = ad_rows
        self.account_rows = account_rows
        self.report_rows = report_rows

    def __call__(self, request: httpx.Request):
        path = request.url.path
        if path.endswith("/act_123/insights"):
            if request.method == "POST":
                return httpx.Response(200, json={"report_run_id": "777"})
            level = request.url.params.get("level")
            rows = self.ad_rows if level == "ad" else self.account_rows
            return httpx.Response(200, json={"data": rows, "paging": {}})
        if path.endswith("/777"):
            return httpx.Response(200, json={"id": "777", "async_status": "Job Completed", "async_percent_completion": 100})
        if path.endswith("/777/insights"):
            return httpx.Response(200, json={"data": self.report_rows})
        return httpx.Response(404, json={"error": {"code": 100, "message": "Unknown path"}})


def test_meta_sync_never_double_counts_a_date(store, settings):
    connection = store.create_connection("meta", "123", "meta-token")
    vendor = FakeMeta(
        ad_rows=[{"ad_id": "a1", "date_start": "2026-03-01", "spend": "5.00"}],
        account_rows=[
            {"account_id": "123", "date_start": "2026-03-01", "spend": "40.00"},
            {"account_id": "123", "date_start": "2026-03-02", "spend": "60.00"},
        ],
        report_rows=[
            {"ad_id": "a1", "date_start": "2026-03-01", "spend": "5.00"},
            {"ad_id": "a2", "date_start": "2026-03-02", "spend": "7.00"},
        ],
    )
    controller = _controller(store, vendor, settings)

    async def scenario():
        handle = await controller.start_sync(connection.id)
        # After quick sync: 03-01 is ad-level, 03-02 only has the account total
        after_quick = store.fetch_rows(connection.id, EntityType.AD_INSIGHTS)
        outcomes = await handle.historical_task
        return handle, after_quick, outcomes

    handle, after_quick, outcomes = run(scenario())

    assert handle.quick_sync.dominated == 1
    assert sorted((str(r["date"]), r["ad_id"]) for r in after_quick) == [
        ("2026-03-01", "a1"),
        ("2026-03-02", ACCOUNT_LEVEL_AD_ID),
    ]

    assert [o.status for o in outcomes] == [BulkJobStatus.COMPLETED]
    assert outcomes[0].write.superseded == 1
    assert store.count_rows(connection.id, EntityType.AD_INSIGHTS, Granularity.AGGREGATE) == 0
    assert store.count_rows(connection.id, EntityType.AD_INSIGHTS, Granularity.GRANULAR) == 2
    assert store.get_connection(connection.id).sync_status == SyncStatus.COMPLETED
