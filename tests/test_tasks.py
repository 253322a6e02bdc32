"""
Tests for the Redis-backed mirror retry queue and background task helpers.
"""

import asyncio
import time
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import pytest

from social.graze.atstore.app.config import (
    MIRROR_RETRY_COUNT_QUEUE,
    MIRROR_RETRY_QUEUE,
    MetricsClientAppKey,
    MirrorTaskSetAppKey,
    RedisClientAppKey,
    SettingsAppKey,
)
from social.graze.atstore.app.tasks import (
    MirrorRetryQueue,
    mirror_retry_scheduler,
    mirror_retry_task,
    mirror_retry_tick,
    retry_mirror,
    run_claimed_retry,
)
from social.graze.atstore.errors import RemoteSchemaInvalidError, RemoteTransportError
from social.graze.atstore.mirror.engine import MirrorResult, MirrorStep


@pytest.fixture
def queue(fake_redis_client, metrics_client):
    return MirrorRetryQueue(
        fake_redis_client,
        metrics_client,
        "worker_1",
        max_retries=2,
        base_delay=60,
        batch_size=2,
        queue_name="test_queue",
        attempts_key="test_queue:retries",
    )


def task_set_returning(result=None, error=None):
    task_set = Mock()
    task_set.run_write = AsyncMock(return_value=result, side_effect=error)
    return task_set


class TestClaiming:
    def test_key_names(self, queue):
        assert queue.claim_key == "test_queue:worker_1"
        assert queue.heartbeat_key == "test_queue:workers"

    async def test_beat(self, queue, fake_redis_client):
        await queue.beat(1234)
        assert await fake_redis_client.hget("test_queue:workers", "worker_1") == b"1234"

    async def test_depth_counts_only_due_uris(self, queue, fake_redis_client):
        now = int(time.time())
        await fake_redis_client.zadd(
            "test_queue", {"due_1": now - 10, "due_2": now, "later": now + 100}
        )
        await fake_redis_client.zadd("test_queue:worker_1", {"claimed": now - 5})

        assert await queue.depth(now) == (1, 2)

    async def test_claim_moves_oldest_due_batch(self, queue, fake_redis_client):
        now = int(time.time())
        await fake_redis_client.zadd(
            "test_queue",
            {"a": now - 30, "b": now - 20, "c": now - 10, "later": now + 100},
        )

        assert await queue.claim(now) == 2
        assert await queue.claimed(now) == ["a", "b"]
        assert await fake_redis_client.zrange("test_queue", 0, -1) == [b"c", b"later"]

    async def test_release(self, queue, fake_redis_client):
        now = int(time.time())
        await fake_redis_client.zadd("test_queue:worker_1", {"a": now - 1})

        await queue.release("a")
        assert await queue.claimed(now) == []


class TestBackoff:
    async def test_enqueue_doubles_delay(self, queue, fake_redis_client):
        assert await queue.enqueue("uri", 1000) is True
        assert await fake_redis_client.zscore("test_queue", "uri") == 1060
        assert await queue.attempts("uri") == 1

        assert await queue.enqueue("uri", 2000) is True
        assert await fake_redis_client.zscore("test_queue", "uri") == 2120
        assert await queue.attempts("uri") == 2

    async def test_gives_up_after_max_retries(
        self, queue, fake_redis_client, metrics_client
    ):
        await queue.enqueue("uri", 1000)
        await queue.enqueue("uri", 1000)
        await fake_redis_client.zrem("test_queue", "uri")

        assert await queue.enqueue("uri", 1000) is False
        assert await fake_redis_client.zscore("test_queue", "uri") is None
        assert await queue.attempts("uri") == 0
        assert "atstore.task.mirror_retry.exhausted" in metrics_client.names()

    async def test_forget(self, queue):
        await queue.enqueue("uri", 1000)
        await queue.forget("uri")
        assert await queue.attempts("uri") == 0

    def test_from_settings(self, fake_redis_client, metrics_client):
        settings = SimpleNamespace(
            worker_id="w", mirror_retry_max_retries=7, mirror_retry_base_delay=5
        )
        queue = MirrorRetryQueue.from_settings(fake_redis_client, metrics_client, settings)

        assert queue.max_retries == 7
        assert queue.base_delay == 5
        assert queue.queue_name == MIRROR_RETRY_QUEUE
        assert queue.attempts_key == MIRROR_RETRY_COUNT_QUEUE


class TestRunClaimedRetry:
    async def test_success_clears_attempts(self, queue, fake_redis_client, metrics_client):
        await queue.enqueue("u", 1000)
        await fake_redis_client.zadd("test_queue:worker_1", {"u": 1000})
        task_set = task_set_returning(MirrorResult(uri="u", state=MirrorStep.DONE))

        assert await run_claimed_retry(queue, task_set, "u", 1000) is True

        assert await queue.attempts("u") == 0
        assert await queue.claimed(2000) == []
        assert "atstore.task.mirror_retry.time" in metrics_client.names("timer")

    async def test_failure_requeues(self, queue, fake_redis_client, metrics_client):
        await fake_redis_client.zadd("test_queue:worker_1", {"u": 1000})
        task_set = task_set_returning(error=RemoteTransportError("down"))

        assert await run_claimed_retry(queue, task_set, "u", 1000) is False

        assert await fake_redis_client.zscore("test_queue", "u") == 1060
        assert await queue.claimed(2000) == []
        assert metrics_client.tags_for("atstore.task.mirror_retry.exception") == [
            {"worker_id": "worker_1", "exception": "RemoteTransportError"}
        ]


class TestMirrorRetry:
    async def test_scheduler_queues_uri(self, fake_redis_client, metrics_client):
        queue = MirrorRetryQueue(fake_redis_client, metrics_client, "worker_1")
        schedule = mirror_retry_scheduler(queue)

        before = int(time.time())
        await schedule("at://did:plc:a/c.d.e/k")

        score = await fake_redis_client.zscore(MIRROR_RETRY_QUEUE, "at://did:plc:a/c.d.e/k")
        assert before + 60 <= score <= int(time.time()) + 60
        assert (
            await fake_redis_client.hget(MIRROR_RETRY_COUNT_QUEUE, "at://did:plc:a/c.d.e/k")
            == b"1"
        )

    async def test_retry_mirror_success(self):
        task_set = task_set_returning(MirrorResult(uri="u", state=MirrorStep.DONE))

        await retry_mirror(task_set, "u")

        task_set.run_write.assert_awaited_once_with("u", schedule_retry=False)

    async def test_retry_mirror_raises_retryable_failure(self):
        task_set = task_set_returning(
            MirrorResult(
                uri="u",
                state=MirrorStep.ABANDON,
                last_error=RemoteTransportError("down"),
            )
        )

        with pytest.raises(RemoteTransportError):
            await retry_mirror(task_set, "u")

    async def test_retry_mirror_permanent_failure_is_final(self):
        task_set = task_set_returning(
            MirrorResult(
                uri="u",
                state=MirrorStep.ABANDON,
                last_error=RemoteSchemaInvalidError("bad"),
            )
        )

        await retry_mirror(task_set, "u")

    async def test_retry_mirror_record_gone(self):
        await retry_mirror(task_set_returning(None), "u")


class TestMirrorRetryLoop:
    async def test_tick_claims_and_runs_due_uris(self, queue, fake_redis_client):
        await fake_redis_client.zadd("test_queue", {"u": 900})
        task_set = task_set_returning(MirrorResult(uri="u", state=MirrorStep.DONE))

        await mirror_retry_tick(queue, task_set, 1000)

        task_set.run_write.assert_awaited_once_with("u", schedule_retry=False)
        assert await queue.claimed(2000) == []
        assert await fake_redis_client.hget("test_queue:workers", "worker_1") == b"1000"

    async def test_loop_survives_redis_failure(self, fake_redis_client, metrics_client):
        real_hset = fake_redis_client.hset
        calls = []

        async def flaky_hset(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise ConnectionError("redis unavailable")
            return await real_hset(*args, **kwargs)

        fake_redis_client.hset = flaky_hset
        settings = SimpleNamespace(
            worker_id="worker_1", mirror_retry_max_retries=3, mirror_retry_base_delay=60
        )
        app = {
            SettingsAppKey: settings,
            MetricsClientAppKey: metrics_client,
            MirrorTaskSetAppKey: task_set_returning(None),
            RedisClientAppKey: fake_redis_client,
        }

        ticks = []

        async def two_ticks(delay):
            if delay == 10:
                ticks.append(delay)
                if len(ticks) > 2:
                    raise asyncio.CancelledError()

        with patch("social.graze.atstore.app.tasks.asyncio.sleep", two_ticks):
            with pytest.raises(asyncio.CancelledError):
                await mirror_retry_task(app)

        assert len(calls) == 2
        assert await fake_redis_client.hget(f"{MIRROR_RETRY_QUEUE}:workers", "worker_1")
        assert metrics_client.tags_for("atstore.task.mirror_retry.tick_exception") == [
            {"exception": "ConnectionError", "worker_id": "worker_1"}
        ]
