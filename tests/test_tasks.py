"""
Tests for the reconcile schedule and scheduled processing.

ReconcileQueue and RetryHandler run against fakeredis. process_corporation runs against an application
assembled from in-memory collaborators.
"""

import asyncio
import time
from unittest.mock import AsyncMock, Mock, patch

from aiohttp import web
import pytest
import pytest_asyncio

from brave.bpc.app.config import (
    MetricsClientAppKey,
    ReconcilerAppKey,
    ScopeResolverAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
)
from brave.bpc.app.tasks import (
    ReconcileQueue,
    RetryHandler,
    normalize_redis_string,
    process_corporation,
    reconcile_corporation,
)
from brave.bpc.auth.resolver import ScopeResolver
from brave.bpc.auth.store import TokenStore
from brave.bpc.esi.errors import ESIError
from brave.bpc.esi.scopes import CORPORATIONS_READ_BLUEPRINTS
from brave.bpc.reconcile.reconciler import Reconciler
from tests.test_helpers import (
    NOW,
    MemoryRepository,
    MockMetricsClient,
    ScriptedRefresher,
    make_record,
    make_token,
)

CORP_A = 98000001
CORP_B = 98000002
CORP_C = 98000003
OUTSIDER = 90000001
DIRECTOR = 90000002


def director_token():
    return make_token(DIRECTOR, {CORPORATIONS_READ_BLUEPRINTS}, corporation_id=CORP_A)


@pytest_asyncio.fixture
async def metrics_client():
    return MockMetricsClient()


@pytest_asyncio.fixture
async def queue(fake_redis_client):
    return ReconcileQueue(fake_redis_client, "reconcile", "worker_1", batch_size=5)


@pytest_asyncio.fixture
async def retry_handler(fake_redis_client, metrics_client, queue):
    return RetryHandler(
        fake_redis_client,
        metrics_client,
        queue,
        "reconcile:retries",
        max_retries=3,
        base_delay=60,
    )


class TestNormalizeRedisString:

    @pytest.mark.parametrize("value", [b"98000001", "98000001", 98000001])
    def test_normalize(self, value):
        assert normalize_redis_string(value) == "98000001"


class TestReconcileQueue:

    def test_keys(self, queue):
        assert queue.claimed_key == "reconcile:worker_1"
        assert queue.heartbeat_key == "reconcile:workers"
        assert queue.batch_size == 5

    async def test_heartbeat_per_worker(self, fake_redis_client):
        queue1 = ReconcileQueue(fake_redis_client, "reconcile", "worker_1")
        queue2 = ReconcileQueue(fake_redis_client, "reconcile", "worker_2")
        now = int(time.time())

        await queue1.heartbeat(now)
        await queue2.heartbeat(now + 10)
        await queue1.heartbeat(now + 20)

        assert await fake_redis_client.hget("reconcile:workers", "worker_1") == str(now + 20).encode()
        assert await fake_redis_client.hget("reconcile:workers", "worker_2") == str(now + 10).encode()

    async def test_schedule_replaces_due_time(self, queue, fake_redis_client):
        await queue.schedule(CORP_A, 1000)
        await queue.schedule(CORP_A, 5000)

        assert await fake_redis_client.zscore("reconcile", str(CORP_A)) == 5000
        assert await fake_redis_client.zcard("reconcile") == 1

    async def test_schedule_if_absent_keeps_existing(self, queue, fake_redis_client):
        assert await queue.schedule_if_absent(CORP_A, 1000)
        assert not await queue.schedule_if_absent(CORP_A, 2000)

        assert await fake_redis_client.zscore("reconcile", str(CORP_A)) == 1000

    async def test_depth_counts_due_only(self, queue, fake_redis_client):
        now = int(time.time())
        assert await queue.depth(now) == (0, 0)

        await queue.schedule(CORP_A, now)
        await queue.schedule(CORP_B, now - 1)
        await queue.schedule(CORP_C, now + 1)
        await fake_redis_client.zadd("reconcile:worker_1", {"98000004": now - 30})

        assert await queue.depth(now) == (1, 2)

    async def test_claim_moves_due_corporations(self, queue, fake_redis_client):
        now = int(time.time())
        await queue.schedule(CORP_A, now - 100)
        await queue.schedule(CORP_B, now - 10)
        await queue.schedule(CORP_C, now + 100)

        assert await queue.claim(now) == 2

        assert await queue.claimed(now) == [(str(CORP_A), now - 100), (str(CORP_B), now - 10)]
        assert await fake_redis_client.zrange("reconcile", 0, -1) == [str(CORP_C).encode()]

    async def test_claim_respects_batch_size(self, fake_redis_client):
        queue = ReconcileQueue(fake_redis_client, "reconcile", "worker_1", batch_size=2)
        now = int(time.time())
        for i in range(4):
            await queue.schedule(CORP_A + i, now - i)

        assert await queue.claim(now) == 2
        assert await fake_redis_client.zcard("reconcile") == 2

    async def test_nothing_due(self, queue):
        now = int(time.time())
        await queue.schedule(CORP_A, now + 3600)

        assert await queue.claim(now) == 0
        assert await queue.claimed(now + 7200) == []

    async def test_workers_never_share_claims(self, fake_redis_client):
        now = int(time.time())
        worker1 = ReconcileQueue(fake_redis_client, "reconcile", "worker_1", batch_size=2)
        worker2 = ReconcileQueue(fake_redis_client, "reconcile", "worker_2", batch_size=2)
        for i in range(4):
            await worker1.schedule(CORP_A + i, now - i)

        await asyncio.gather(worker1.claim(now), worker2.claim(now))

        claimed1 = {member for member, _ in await worker1.claimed(now)}
        claimed2 = {member for member, _ in await worker2.claimed(now)}
        assert len(claimed1) + len(claimed2) == 4
        assert claimed1.isdisjoint(claimed2)

    async def test_release(self, queue, fake_redis_client):
        await fake_redis_client.zadd("reconcile:worker_1", {str(CORP_A): 1, str(CORP_B): 2})

        await queue.release(str(CORP_A))
        await queue.release("missing")

        assert await queue.claimed(10) == [(str(CORP_B), 2.0)]


class TestRetryHandler:

    async def test_backoff_doubles(self, retry_handler, fake_redis_client, metrics_client):
        now = 1_000_000

        for attempt, delay in enumerate([60, 120, 240], start=1):
            assert await retry_handler.schedule_retry(CORP_A, now)
            assert await fake_redis_client.zscore("reconcile", str(CORP_A)) == now + delay
            assert await retry_handler.attempts(CORP_A) == attempt

        assert metrics_client.count("bpc.task.retry_scheduled") == 3

    async def test_gives_up_after_max_retries(self, retry_handler, fake_redis_client, metrics_client):
        await fake_redis_client.hset("reconcile:retries", str(CORP_A), 3)

        assert not await retry_handler.schedule_retry(CORP_A, 1_000_000)

        assert await retry_handler.attempts(CORP_A) == 0
        assert await fake_redis_client.zscore("reconcile", str(CORP_A)) is None
        assert metrics_client.count("bpc.task.max_retries_exceeded") == 1

    async def test_reset(self, retry_handler):
        await retry_handler.schedule_retry(CORP_A, 1_000_000)

        await retry_handler.reset(CORP_A)

        assert await retry_handler.attempts(CORP_A) == 0


@pytest.fixture
def app(metrics_client):
    token_store = TokenStore()
    app = web.Application()
    app[SettingsAppKey] = Settings(corporation_id=CORP_A)
    app[MetricsClientAppKey] = metrics_client
    app[SessionAppKey] = Mock()
    app[ScopeResolverAppKey] = ScopeResolver(token_store, ScriptedRefresher(), clock=lambda: NOW)
    app[ReconcilerAppKey] = Reconciler(MemoryRepository())
    return app


class TestProcessCorporation:

    async def test_success(self, app, metrics_client):
        await app[ScopeResolverAppKey].store.put(director_token())
        fetch = AsyncMock(return_value=[make_record(1), make_record(2)])

        with patch("brave.bpc.app.tasks.fetch_corporation_blueprints", fetch):
            assert await process_corporation(app, CORP_A)

        assert metrics_client.count("bpc.reconcile.events") == 2
        assert metrics_client.count("bpc.reconcile.run.count") == 1
        assert metrics_client.count("bpc.task.reconcile.count") == 1
        assert "bpc.task.reconcile.time" in metrics_client.timers

    async def test_no_coverage_is_not_retried(self, app, metrics_client):
        assert await process_corporation(app, CORP_A)

        assert metrics_client.count("bpc.reconcile.no_coverage") == 1
        assert metrics_client.count("bpc.task.reconcile.exception") == 0

    async def test_fetch_failure_is_retried(self, app, metrics_client):
        await app[ScopeResolverAppKey].store.put(director_token())
        fetch = AsyncMock(side_effect=ESIError(503, "unavailable"))

        with patch("brave.bpc.app.tasks.fetch_corporation_blueprints", fetch):
            assert not await process_corporation(app, CORP_A)

        assert metrics_client.count("bpc.task.reconcile.exception") == 1
        assert metrics_client.count("bpc.task.reconcile.count") == 1

    async def test_overlapping_run_is_skipped(self, app, metrics_client):
        reconciler = app[ReconcilerAppKey]
        reconciler.run = AsyncMock(return_value=None)
        await app[ScopeResolverAppKey].store.put(director_token())

        assert await reconcile_corporation(app, CORP_A) is None
        assert metrics_client.count("bpc.reconcile.run.skipped") == 1


class TestReconcileCorporation:

    async def test_uses_member_of_the_corporation(self, app):
        store = app[ScopeResolverAppKey].store
        await store.put(make_token(OUTSIDER, {CORPORATIONS_READ_BLUEPRINTS}, corporation_id=CORP_B))
        await store.put(director_token())
        fetch = AsyncMock(return_value=[make_record(1)])

        with patch("brave.bpc.app.tasks.fetch_corporation_blueprints", fetch):
            events = await reconcile_corporation(app, CORP_A)

        assert events is not None and len(events) == 1
        assert fetch.await_args.args[1] == f"access-{DIRECTOR}"
        assert fetch.await_args.args[2] == CORP_A

    @pytest.mark.parametrize("corporation_id", [CORP_B, None])
    async def test_characters_outside_the_corporation_do_not_cover(self, app, metrics_client, corporation_id):
        await app[ScopeResolverAppKey].store.put(
            make_token(OUTSIDER, {CORPORATIONS_READ_BLUEPRINTS}, corporation_id=corporation_id)
        )
        fetch = AsyncMock(return_value=[])

        with patch("brave.bpc.app.tasks.fetch_corporation_blueprints", fetch):
            assert await process_corporation(app, CORP_A)

        fetch.assert_not_awaited()
        assert metrics_client.count("bpc.reconcile.no_coverage") == 1
