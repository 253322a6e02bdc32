"""
Tests for background mirror runs triggered by local writes.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from social.graze.atstore.atproto.session import CredentialHandle
from social.graze.atstore.errors import RemoteTransportError
from social.graze.atstore.mirror.engine import MirrorStep, RemoteMirror
from social.graze.atstore.mirror.scheduler import MirrorTaskSet
from tests.test_helpers import (
    TEST_COLLECTION,
    FakeRepoClient,
    make_record,
    make_session,
)


@pytest.fixture
def repo_client():
    return FakeRepoClient()


@pytest.fixture
def session_lifecycle(repo_client):
    lifecycle = Mock()

    async def restore(identity_id):
        return CredentialHandle(
            identity_id=identity_id,
            session=make_session(did=identity_id),
            repo_client=repo_client,
        )

    lifecycle.restore = AsyncMock(side_effect=restore)
    return lifecycle


@pytest.fixture
def deferred():
    return []


@pytest.fixture
def remote_mirror(metrics_client, deferred):
    async def scheduler(uri):
        deferred.append(uri)

    return RemoteMirror(TEST_COLLECTION, metrics_client, retry_scheduler=scheduler)


@pytest.fixture
def task_set(record_store, session_lifecycle, remote_mirror, metrics_client):
    return MirrorTaskSet(record_store, session_lifecycle, remote_mirror, metrics_client)


async def test_run_write_mirrors_current_state(task_set, record_store, repo_client):
    record = await record_store.create(make_record())
    await record_store.upsert(make_record(title="Edited"))

    result = await task_set.run_write(record.uri)

    assert result.succeeded
    assert repo_client.calls[0][4]["title"] == "Edited"


async def test_run_write_missing_record(task_set, session_lifecycle):
    assert await task_set.run_write("at://did:plc:alice/c.d.e/gone") is None
    session_lifecycle.restore.assert_not_awaited()


async def test_run_write_without_session(
    task_set, record_store, session_lifecycle, repo_client, metrics_client
):
    session_lifecycle.restore = AsyncMock(return_value=None)
    record = await record_store.create(make_record())

    assert await task_set.run_write(record.uri) is None
    assert repo_client.calls == []
    assert metrics_client.tags_for("atstore.mirror.skipped") == [
        {"reason": "no_session"}
    ]


async def test_run_write_restore_transport_failure_defers(
    task_set, record_store, session_lifecycle, deferred
):
    session_lifecycle.restore = AsyncMock(side_effect=RemoteTransportError("down"))
    record = await record_store.create(make_record())

    result = await task_set.run_write(record.uri)

    assert result.state is MirrorStep.ABANDON
    assert deferred == [record.uri]


async def test_run_write_without_retry_does_not_defer(
    task_set, record_store, repo_client, deferred
):
    repo_client.failures[("put", True)] = RemoteTransportError("down")
    record = await record_store.create(make_record())

    result = await task_set.run_write(record.uri, schedule_retry=False)

    assert result.state is MirrorStep.ABANDON
    assert deferred == []


async def test_schedule_write_runs_in_background(task_set, record_store, repo_client):
    record = await record_store.create(make_record())

    task = task_set.schedule_write(record.uri)
    assert task_set.pending == 1

    result = await task
    assert result.succeeded
    await asyncio.sleep(0)
    assert task_set.pending == 0


async def test_schedule_delete(task_set, repo_client):
    record = make_record()

    result = await task_set.schedule_delete(record.uri, record.author_id)

    assert result.succeeded
    assert repo_client.calls[0][0] == "delete"


async def test_failed_task_is_reported(
    task_set, record_store, session_lifecycle, metrics_client
):
    session_lifecycle.restore = AsyncMock(side_effect=RuntimeError("boom"))
    record = await record_store.create(make_record())

    task = task_set.schedule_write(record.uri)
    with pytest.raises(RuntimeError):
        await task
    await asyncio.sleep(0)

    assert metrics_client.tags_for("atstore.mirror.exception") == [
        {"exception": "RuntimeError"}
    ]
    assert task_set.pending == 0


async def test_close_cancels_pending_runs(task_set, session_lifecycle):
    started = asyncio.Event()

    async def hang(identity_id):
        started.set()
        await asyncio.sleep(60)

    session_lifecycle.restore = AsyncMock(side_effect=hang)

    task = task_set.schedule_delete("at://did:plc:alice/c.d.e/k", "did:plc:alice")
    await started.wait()
    await task_set.close()

    assert task.cancelled()
