"""
Out-of-band mirror runs.

`MirrorTaskSet` is what the HTTP handlers call after a local commit. Each call
spawns a tracked asyncio task that reloads the record, restores the author's
session and runs the mirror engine. The request that triggered it never waits
for the remote repository.
"""

import asyncio
import logging
from typing import Optional, Set

import sentry_sdk

from social.graze.atstore.app.metrics import MetricsClient
from social.graze.atstore.atproto.session import SessionLifecycle
from social.graze.atstore.errors import RemoteTransportError
from social.graze.atstore.mirror.engine import (
    MirrorResult,
    MirrorStep,
    RemoteMirror,
)
from social.graze.atstore.storage.records import RecordStore

logger = logging.getLogger(__name__)


class MirrorTaskSet:
    """
    Spawn and track background mirror runs.

    Session restore completes, and its database session is closed, before any
    remote call is made.
    """

    def __init__(
        self,
        record_store: RecordStore,
        session_lifecycle: SessionLifecycle,
        remote_mirror: RemoteMirror,
        metrics_client: MetricsClient,
    ) -> None:
        self._record_store = record_store
        self._session_lifecycle = session_lifecycle
        self._remote_mirror = remote_mirror
        self._metrics_client = metrics_client
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule_write(self, uri: str) -> asyncio.Task:
        return self._spawn(self.run_write(uri), uri)

    def schedule_delete(self, uri: str, author_id: str) -> asyncio.Task:
        return self._spawn(self.run_delete(uri, author_id), uri)

    async def run_write(
        self, uri: str, schedule_retry: bool = True
    ) -> Optional[MirrorResult]:
        """
        Mirror the current local state of `uri`.

        Returns None when there is nothing to do: the record no longer exists
        locally or its author has no stored session.
        """
        record = await self._record_store.get(uri)
        if record is None:
            logger.debug(f"Record {uri} no longer exists, skipping mirror")
            return None

        try:
            credentials = await self._session_lifecycle.restore(record.author_id)
        except RemoteTransportError as e:
            logger.warning(f"Unable to restore session for {record.author_id}: {e}")
            self._metrics_client.increment(
                "atstore.mirror.abandon", 1, tag_dict={"kind": "session"}
            )
            if schedule_retry:
                await self._remote_mirror.defer(uri)
            return MirrorResult(uri=uri, state=MirrorStep.ABANDON, last_error=e)

        if credentials is None:
            logger.warning(
                f"No session stored for {record.author_id}, not mirroring {uri}"
            )
            self._metrics_client.increment(
                "atstore.mirror.skipped", 1, tag_dict={"reason": "no_session"}
            )
            return None

        return await self._remote_mirror.mirror(
            record, credentials.repo_client, schedule_retry=schedule_retry
        )

    async def run_delete(self, uri: str, author_id: str) -> Optional[MirrorResult]:
        try:
            credentials = await self._session_lifecycle.restore(author_id)
        except RemoteTransportError as e:
            logger.warning(f"Unable to restore session for {author_id}: {e}")
            return MirrorResult(uri=uri, state=MirrorStep.ABANDON, last_error=e)

        if credentials is None:
            logger.warning(f"No session stored for {author_id}, not deleting {uri}")
            self._metrics_client.increment(
                "atstore.mirror.skipped", 1, tag_dict={"reason": "no_session"}
            )
            return None

        return await self._remote_mirror.mirror_delete(uri, credentials.repo_client)

    async def close(self) -> None:
        """Cancel outstanding mirror runs and wait for them to finish."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _spawn(self, coro, uri: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"mirror:{uri}")
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        e = task.exception()
        if e is not None:
            sentry_sdk.capture_exception(e)
            logger.error(f"Mirror task {task.get_name()} failed", exc_info=e)
            self._metrics_client.increment(
                "atstore.mirror.exception",
                1,
                tag_dict={"exception": type(e).__name__},
            )
