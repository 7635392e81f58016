"""
Background work for the BPC service.

Scheduled reconciliation is driven by a Redis sorted set shared by every worker. Members are corporation ids
scored by the unix time their next run is due. On each tick a worker claims a batch of due corporations by
moving them into its own sorted set, reconciles them, and puts each one back on the schedule: at the regular
interval after a success, or after an exponential backoff when the run failed for a retryable reason.

Keys, with ``RECONCILE_QUEUE`` as the prefix:
- ``<prefix>``: the shared schedule
- ``<prefix>:<worker_id>``: corporations claimed by one worker
- ``<prefix>:workers``: worker heartbeats
- ``RECONCILE_RETRY_QUEUE``: consecutive failure count per corporation
"""

import asyncio
from datetime import datetime, timezone
import logging
from time import time
from typing import Any, List, NoReturn, Optional, Tuple

from aiohttp import web
import redis.asyncio as redis
import sentry_sdk

from brave.bpc.app.config import (
    RECONCILE_QUEUE,
    RECONCILE_RETRY_QUEUE,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    ReconcilerAppKey,
    RedisClientAppKey,
    ScopeResolverAppKey,
    SessionAppKey,
    SettingsAppKey,
)
from brave.bpc.app.metrics import MetricsClient
from brave.bpc.auth.resolver import NoCoverage
from brave.bpc.esi.corporation import fetch_corporation_blueprints
from brave.bpc.esi.scopes import required_scopes
from brave.bpc.reconcile.records import ReconciliationEvent

logger = logging.getLogger(__name__)

RECONCILE_OPERATION = "blueprints.reconcile"


def utc_timestamp() -> int:
    return int(datetime.now(timezone.utc).timestamp())


def normalize_redis_string(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


class ReconcileQueue:
    """
    The reconcile schedule as seen by one worker.

    Args:
        redis_client: Shared Redis client
        queue_name: Key of the shared schedule
        worker_id: This worker's id; names its claim set and heartbeat field
        batch_size: Most corporations claimed per tick
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        queue_name: str,
        worker_id: str,
        batch_size: int = 5,
    ):
        self.redis_client = redis_client
        self.queue_name = queue_name
        self.worker_id = worker_id
        self.batch_size = batch_size
        self.claimed_key = f"{queue_name}:{worker_id}"
        self.heartbeat_key = f"{queue_name}:workers"

    async def heartbeat(self, now: int) -> None:
        await self.redis_client.hset(self.heartbeat_key, self.worker_id, str(now))

    async def depth(self, now: int) -> Tuple[int, int]:
        """Returns (claimed, scheduled): how many corporations are due in this worker's set and in the schedule."""
        claimed = await self.redis_client.zcount(self.claimed_key, 0, now)
        scheduled = await self.redis_client.zcount(self.queue_name, 0, now)
        return claimed, scheduled

    async def schedule(self, corporation_id: int, due: int) -> None:
        """Schedule a run at ``due``, replacing any run already scheduled."""
        await self.redis_client.zadd(self.queue_name, {str(corporation_id): due})

    async def schedule_if_absent(self, corporation_id: int, due: int) -> bool:
        """Schedule a run at ``due`` unless one is already scheduled. Returns True if this call added it."""
        added = await self.redis_client.zadd(self.queue_name, {str(corporation_id): due}, nx=True)
        return added > 0

    async def claim(self, now: int) -> int:
        """
        Move up to ``batch_size`` due corporations from the schedule into this worker's set.

        Both steps run in one pipeline so a corporation is never in the schedule and a claim set at once.
        Returns how many were claimed.
        """
        async with self.redis_client.pipeline() as pipe:
            pipe.zrangestore(
                self.claimed_key,
                self.queue_name,
                0,
                now,
                byscore=True,
                offset=0,
                num=self.batch_size,
            )
            pipe.zdiffstore(self.queue_name, [self.queue_name, self.claimed_key])
            claimed, _ = await pipe.execute()
            return claimed

    async def claimed(self, now: int) -> List[Tuple[str, float]]:
        """Members claimed by this worker and due by ``now``, soonest first, as (member, due) pairs."""
        members = await self.redis_client.zrange(
            self.claimed_key, 0, now, byscore=True, withscores=True
        )
        return [(normalize_redis_string(member), due) for member, due in members]

    async def release(self, member: str) -> None:
        await self.redis_client.zrem(self.claimed_key, member)


class RetryHandler:
    """
    Exponential backoff of failed reconciliations.

    The n-th consecutive failure of a corporation is retried ``base_delay * 2 ** n`` seconds later, up to
    ``max_retries`` times. The count is kept in a Redis hash so it survives worker restarts.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        metrics_client: MetricsClient,
        queue: ReconcileQueue,
        retry_key: str,
        max_retries: int,
        base_delay: int,
    ):
        self.redis_client = redis_client
        self.metrics_client = metrics_client
        self.queue = queue
        self.retry_key = retry_key
        self.max_retries = max_retries
        self.base_delay = base_delay

    async def attempts(self, corporation_id: int) -> int:
        value = await self.redis_client.hget(self.retry_key, str(corporation_id))
        return int(value) if value else 0

    async def schedule_retry(self, corporation_id: int, now: int) -> bool:
        """
        Put a failed corporation back on the schedule after its backoff delay.

        Returns False, and resets the count, once ``max_retries`` is used up; the caller decides when to try
        again.
        """
        attempts = await self.attempts(corporation_id)

        if attempts >= self.max_retries:
            await self.reset(corporation_id)
            logger.error(
                "Giving up on corporation %d after %d retries", corporation_id, attempts
            )
            self.metrics_client.increment(
                "bpc.task.max_retries_exceeded",
                1,
                tag_dict={"worker_id": self.queue.worker_id},
            )
            return False

        delay = self.base_delay * (2**attempts)
        await self.queue.schedule(corporation_id, now + delay)
        await self.redis_client.hset(self.retry_key, str(corporation_id), attempts + 1)

        logger.info(
            "Retry %d/%d of corporation %d in %d seconds",
            attempts + 1,
            self.max_retries,
            corporation_id,
            delay,
        )
        self.metrics_client.increment(
            "bpc.task.retry_scheduled",
            1,
            tag_dict={"retry_attempt": str(attempts + 1), "worker_id": self.queue.worker_id},
        )
        return True

    async def reset(self, corporation_id: int) -> None:
        await self.redis_client.hdel(self.retry_key, str(corporation_id))


async def tick_health_task(app: web.Application) -> NoReturn:
    logger.info("Starting health gauge task")

    health_gauge = app[HealthGaugeAppKey]
    while True:
        await health_gauge.decay()
        await asyncio.sleep(30)


async def reconcile_corporation(
    app: web.Application, corporation_id: int
) -> Optional[List[ReconciliationEvent]]:
    """
    Resolve a token able to read the corporation's blueprints and reconcile them against the stored snapshot.

    Only characters recorded as members of the corporation are considered; ESI refuses the blueprint route to
    anyone else, whatever scopes they granted.

    Returns the events written, or None if a run for the corporation was already in flight.

    Raises:
        NoCoverage: No linked member of the corporation grants the blueprint scope
        ResolutionTransient: The only suitable token could not be refreshed right now
        ReconciliationAborted: The ESI fetch failed; nothing was written
    """
    settings = app[SettingsAppKey]
    http_session = app[SessionAppKey]
    resolver = app[ScopeResolverAppKey]
    reconciler = app[ReconcilerAppKey]
    metrics_client = app[MetricsClientAppKey]

    members = resolver.store.members_of(corporation_id)
    token = await resolver.token_for(required_scopes(RECONCILE_OPERATION), among=members)

    async def fetch():
        return await fetch_corporation_blueprints(
            http_session,
            token.access_token,
            corporation_id,
            timeout=settings.esi_timeout,
        )

    start_time = time()
    events = await reconciler.run(corporation_id, fetch)
    if events is None:
        metrics_client.increment("bpc.reconcile.run.skipped", 1)
        return None

    metrics_client.timer("bpc.reconcile.run.time", time() - start_time)
    metrics_client.increment("bpc.reconcile.run.count", 1)
    for event in events:
        metrics_client.increment(
            "bpc.reconcile.events", 1, tag_dict={"kind": event.kind.value}
        )
    return events


async def process_corporation(app: web.Application, corporation_id: int) -> bool:
    """
    One scheduled reconciliation, timed and reported. Returns False if it should be retried.

    A corporation no linked character can read is not a failure to retry: it is logged and counted, and the
    regular schedule picks it up again once a member links a suitable character.
    """
    metrics_client = app[MetricsClientAppKey]
    worker_tags = {"worker_id": app[SettingsAppKey].worker_id}

    with metrics_client.timed("bpc.task.reconcile", tag_dict=worker_tags):
        try:
            await reconcile_corporation(app, corporation_id)
        except NoCoverage as e:
            logger.warning(
                "Cannot reconcile corporation %d: no linked character grants %s",
                corporation_id,
                e.scope,
            )
            metrics_client.increment(
                "bpc.reconcile.no_coverage", 1, tag_dict={"scope": e.scope}
            )
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Error reconciling corporation %d", corporation_id)
            metrics_client.increment(
                "bpc.task.reconcile.exception",
                1,
                tag_dict={**worker_tags, "exception": type(e).__name__},
            )
            return False
    return True


async def reconcile_task(app: web.Application) -> NoReturn:
    """
    Reconcile scheduled corporations every 10 seconds.

    The configured corporation is put on the schedule at startup unless it already is. Every finished run,
    successful or out of retries, schedules the next one ``reconcile_interval`` seconds later.
    """
    logger.info("Starting reconcile task")

    settings = app[SettingsAppKey]
    metrics_client = app[MetricsClientAppKey]
    health_gauge = app[HealthGaugeAppKey]
    worker_tags = {"worker_id": settings.worker_id}

    queue = ReconcileQueue(app[RedisClientAppKey], RECONCILE_QUEUE, settings.worker_id)
    retry_handler = RetryHandler(
        app[RedisClientAppKey],
        metrics_client,
        queue,
        RECONCILE_RETRY_QUEUE,
        settings.reconcile_max_retries,
        settings.reconcile_retry_base_delay,
    )

    if settings.corporation_id:
        await queue.schedule_if_absent(settings.corporation_id, utc_timestamp())

    while True:
        await asyncio.sleep(10)

        now = utc_timestamp()
        await queue.heartbeat(now)

        claimed_count, scheduled_count = await queue.depth(now)
        metrics_client.gauge("bpc.task.reconcile.worker_queue_count", claimed_count, tag_dict=worker_tags)
        metrics_client.gauge("bpc.task.reconcile.global_queue_count", scheduled_count, tag_dict=worker_tags)

        if claimed_count == 0 and scheduled_count > 0:
            try:
                claimed = await queue.claim(now)
                metrics_client.increment("bpc.task.reconcile.work_queued", claimed, tag_dict=worker_tags)
            except Exception as e:
                sentry_sdk.capture_exception(e)
                logger.exception("Error claiming scheduled reconciliations")

        for member, due in await queue.claimed(now):
            try:
                corporation_id = int(member)
            except ValueError:
                logger.error("Dropping malformed reconcile entry %r", member)
                await queue.release(member)
                continue

            logger.debug("Reconciling corporation %d, due %d", corporation_id, due)

            if await process_corporation(app, corporation_id):
                await retry_handler.reset(corporation_id)
                await queue.schedule(corporation_id, now + settings.reconcile_interval)
            else:
                await health_gauge.record_failure()
                if not await retry_handler.schedule_retry(corporation_id, now):
                    await queue.schedule(corporation_id, now + settings.reconcile_interval)

            await queue.release(member)
