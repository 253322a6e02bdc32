import asyncio
from datetime import datetime, timedelta, timezone
import logging
from time import time
from typing import Any, List, NoReturn, Tuple

from aiohttp import web
import sentry_sdk

from social.graze.atstore.app.config import (
    MIRROR_RETRY_COUNT_QUEUE,
    MIRROR_RETRY_QUEUE,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    MirrorTaskSetAppKey,
    RedisClientAppKey,
    Settings,
    SettingsAppKey,
    StateStoreAppKey,
)
from social.graze.atstore.mirror.classify import is_retryable
from social.graze.atstore.mirror.engine import MirrorRetryScheduler
from social.graze.atstore.mirror.scheduler import MirrorTaskSet

logger = logging.getLogger(__name__)


def _as_text(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


class MirrorRetryQueue:
    """
    Redis queue of record uris whose mirror should be attempted again.

    `queue_name` is a sorted set scored by the epoch second each uri becomes
    due. A worker claims a batch of due uris into `claim_key` before running
    them, so a uri is only ever held by one worker. `attempts_key` is a hash
    of how many retries each uri has been given. The delay before retry `n`
    (counting from zero) is `base_delay * 2 ** n` seconds.
    """

    def __init__(
        self,
        redis_client: Any,
        metrics_client: Any,
        worker_id: str,
        max_retries: int = 3,
        base_delay: int = 60,
        batch_size: int = 5,
        queue_name: str = MIRROR_RETRY_QUEUE,
        attempts_key: str = MIRROR_RETRY_COUNT_QUEUE,
    ):
        self.redis = redis_client
        self.metrics = metrics_client
        self.worker_id = worker_id
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.batch_size = batch_size
        self.queue_name = queue_name
        self.attempts_key = attempts_key

    @classmethod
    def from_settings(
        cls, redis_client: Any, metrics_client: Any, settings: Settings
    ) -> "MirrorRetryQueue":
        return cls(
            redis_client,
            metrics_client,
            settings.worker_id,
            max_retries=settings.mirror_retry_max_retries,
            base_delay=settings.mirror_retry_base_delay,
        )

    @property
    def claim_key(self) -> str:
        return f"{self.queue_name}:{self.worker_id}"

    @property
    def heartbeat_key(self) -> str:
        return f"{self.queue_name}:workers"

    async def beat(self, now: int) -> None:
        await self.redis.hset(self.heartbeat_key, self.worker_id, str(now))

    async def depth(self, now: int) -> Tuple[int, int]:
        """Number of due uris as (claimed by this worker, waiting to be claimed)."""
        claimed = await self.redis.zcount(self.claim_key, 0, now)
        waiting = await self.redis.zcount(self.queue_name, 0, now)
        return claimed, waiting

    async def claim(self, now: int) -> int:
        """Move up to `batch_size` due uris to this worker. Returns how many moved."""
        async with self.redis.pipeline() as pipe:
            pipe.zrangestore(
                self.claim_key,
                self.queue_name,
                0,
                now,
                byscore=True,
                offset=0,
                num=self.batch_size,
            )
            pipe.zdiffstore(self.queue_name, [self.queue_name, self.claim_key])
            moved, _ = await pipe.execute()
        return moved

    async def claimed(self, now: int) -> List[str]:
        members = await self.redis.zrange(self.claim_key, 0, now, byscore=True)
        return [_as_text(member) for member in members]

    async def attempts(self, uri: str) -> int:
        raw = await self.redis.hget(self.attempts_key, uri)
        return int(raw) if raw else 0

    async def enqueue(self, uri: str, now: int) -> bool:
        """
        Queue `uri` after its backoff delay.

        Returns False, and forgets the uri, once it has used up its retries.
        """
        attempt = await self.attempts(uri)
        if attempt >= self.max_retries:
            await self.forget(uri)
            logger.error(
                "Giving up mirroring %s after %d retries", uri, self.max_retries
            )
            self.metrics.increment(
                "atstore.task.mirror_retry.exhausted",
                1,
                tag_dict={"worker_id": self.worker_id},
            )
            return False

        delay = self.base_delay * 2**attempt
        await self.redis.zadd(self.queue_name, {uri: now + delay})
        await self.redis.hset(self.attempts_key, uri, attempt + 1)

        logger.info(
            "Mirror retry %d/%d for %s due in %ds",
            attempt + 1,
            self.max_retries,
            uri,
            delay,
        )
        self.metrics.increment(
            "atstore.task.mirror_retry.scheduled",
            1,
            tag_dict={"attempt": str(attempt + 1), "worker_id": self.worker_id},
        )
        return True

    async def forget(self, uri: str) -> None:
        await self.redis.hdel(self.attempts_key, uri)

    async def release(self, uri: str) -> None:
        await self.redis.zrem(self.claim_key, uri)


def mirror_retry_scheduler(queue: MirrorRetryQueue) -> MirrorRetryScheduler:
    """Callback RemoteMirror uses to hand an abandoned mirror to the queue."""

    async def schedule(uri: str) -> None:
        await queue.enqueue(uri, int(time()))

    return schedule


async def retry_mirror(task_set: MirrorTaskSet, uri: str) -> None:
    """
    Run one queued mirror retry.

    Raises the last remote failure when the mirror was abandoned for a reason
    that is worth retrying again.
    """
    result = await task_set.run_write(uri, schedule_retry=False)
    if (
        result is not None
        and not result.succeeded
        and result.last_error is not None
        and is_retryable(result.last_error)
    ):
        raise result.last_error


async def run_claimed_retry(
    queue: MirrorRetryQueue, task_set: MirrorTaskSet, uri: str, now: int
) -> bool:
    """
    Retry one claimed uri, requeue it on failure and release the claim.

    Returns True when the retry needs no further attempts.
    """
    tags = {"worker_id": queue.worker_id}
    started = time()
    try:
        await retry_mirror(task_set, uri)
    except Exception as e:
        sentry_sdk.capture_exception(e)
        logger.exception("Mirror retry of %s failed", uri)
        queue.metrics.increment(
            "atstore.task.mirror_retry.exception",
            1,
            tag_dict={**tags, "exception": type(e).__name__},
        )
        await queue.enqueue(uri, now)
        return False
    else:
        await queue.forget(uri)
        return True
    finally:
        await queue.release(uri)
        queue.metrics.timer("atstore.task.mirror_retry.time", time() - started, tag_dict=tags)
        queue.metrics.increment("atstore.task.mirror_retry.count", 1, tag_dict=tags)


async def tick_health_task(app: web.Application) -> NoReturn:
    """Decay the health score by one point every 30 seconds."""
    logger.info("Starting health gauge task")

    health_gauge = app[HealthGaugeAppKey]
    while True:
        await health_gauge.decay()
        await asyncio.sleep(30)


async def mirror_retry_tick(
    queue: MirrorRetryQueue, task_set: MirrorTaskSet, now: int
) -> None:
    """
    One pass over the retry queue.

    Records a heartbeat and reports queue depth. When this worker holds no
    claimed uris it claims a new batch of due ones, then mirrors each claimed
    uri again from its current local state.
    """
    tags = {"worker_id": queue.worker_id}

    await queue.beat(now)
    claimed, waiting = await queue.depth(now)
    queue.metrics.gauge("atstore.task.mirror_retry.claimed", claimed, tag_dict=tags)
    queue.metrics.gauge("atstore.task.mirror_retry.waiting", waiting, tag_dict=tags)

    if not claimed and waiting:
        moved = await queue.claim(now)
        queue.metrics.increment(
            "atstore.task.mirror_retry.claimed_batch", moved, tag_dict=tags
        )

    for uri in await queue.claimed(now):
        await run_claimed_retry(queue, task_set, uri, now)


async def mirror_retry_task(app: web.Application) -> NoReturn:
    """
    Background loop that runs `mirror_retry_tick` every ten seconds.

    A failing tick is reported and the loop carries on with the next one.
    """
    logger.info("Starting mirror retry task")

    settings = app[SettingsAppKey]
    metrics_client = app[MetricsClientAppKey]
    task_set = app[MirrorTaskSetAppKey]
    queue = MirrorRetryQueue.from_settings(
        app[RedisClientAppKey], metrics_client, settings
    )

    while True:
        await asyncio.sleep(10)
        now = int(datetime.now(timezone.utc).timestamp())

        try:
            await mirror_retry_tick(queue, task_set, now)
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Mirror retry pass failed")
            metrics_client.increment(
                "atstore.task.mirror_retry.tick_exception",
                1,
                tag_dict={"exception": type(e).__name__, "worker_id": settings.worker_id},
            )


async def state_purge_task(app: web.Application) -> NoReturn:
    """
    Delete authorization states that were never redeemed.
    """
    logger.info("Starting state purge task")

    settings = app[SettingsAppKey]
    state_store = app[StateStoreAppKey]
    metrics_client = app[MetricsClientAppKey]

    while True:
        await asyncio.sleep(settings.state_purge_interval)

        cutoff = datetime.now(timezone.utc) - timedelta(seconds=settings.state_ttl)
        try:
            removed = await state_store.purge_older_than(cutoff)
            metrics_client.increment("atstore.task.state_purge.removed", removed)
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("error purging expired authorization states")
