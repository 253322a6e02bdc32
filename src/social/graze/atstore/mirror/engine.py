"""
Put-then-create mirror of content records into a remote repository.

Each mirror run walks an explicit state machine. `next_step` is the pure
transition function; `RemoteMirror.mirror` performs the remote call for the
current step, classifies the outcome and asks for the next step until it
reaches DONE or ABANDON.

```
PUT_VALIDATED      success -> DONE
                   schema  -> PUT_UNVALIDATED
                   missing -> CREATE_VALIDATED
                   other   -> ABANDON
PUT_UNVALIDATED    success -> DONE, failure -> ABANDON
CREATE_VALIDATED   success -> DONE
                   schema  -> CREATE_UNVALIDATED
                   other   -> ABANDON
CREATE_UNVALIDATED success -> DONE, failure -> ABANDON
```

Validation is relaxed at most once per operation, and a record is created at
most once per run.
"""

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from social.graze.atstore.app.metrics import MetricsClient
from social.graze.atstore.atproto.repo import RemoteWriteResult, RepoClient
from social.graze.atstore.mirror.classify import (
    MirrorErrorClass,
    classify,
    is_retryable,
)
from social.graze.atstore.model.records import (
    ContentRecord,
    parse_record_uri,
    to_repo_record,
)

logger = logging.getLogger(__name__)

MirrorRetryScheduler = Callable[[str], Awaitable[None]]


class MirrorOperation(str, Enum):
    PUT = "put"
    CREATE = "create"
    DELETE = "delete"


class MirrorStep(Enum):
    PUT_VALIDATED = (MirrorOperation.PUT, True)
    PUT_UNVALIDATED = (MirrorOperation.PUT, False)
    CREATE_VALIDATED = (MirrorOperation.CREATE, True)
    CREATE_UNVALIDATED = (MirrorOperation.CREATE, False)
    DONE = (None, None)
    ABANDON = ("abandon", None)

    @property
    def operation(self) -> Optional[MirrorOperation]:
        op = self.value[0]
        return op if isinstance(op, MirrorOperation) else None

    @property
    def validate(self) -> Optional[bool]:
        return self.value[1]

    @property
    def terminal(self) -> bool:
        return self in (MirrorStep.DONE, MirrorStep.ABANDON)


_TRANSITIONS = {
    MirrorStep.PUT_VALIDATED: {
        MirrorErrorClass.SCHEMA_INVALID: MirrorStep.PUT_UNVALIDATED,
        MirrorErrorClass.NOT_FOUND: MirrorStep.CREATE_VALIDATED,
    },
    MirrorStep.CREATE_VALIDATED: {
        MirrorErrorClass.SCHEMA_INVALID: MirrorStep.CREATE_UNVALIDATED,
    },
}


def next_step(step: MirrorStep, outcome: Optional[MirrorErrorClass]) -> MirrorStep:
    """
    Transition function of the mirror state machine.

    `outcome` is None when the remote call for `step` succeeded, otherwise the
    class of its failure.
    """
    if step.terminal:
        raise ValueError(f"{step.name} is a terminal step")
    if outcome is None:
        return MirrorStep.DONE
    return _TRANSITIONS.get(step, {}).get(outcome, MirrorStep.ABANDON)


@dataclass
class MirrorAttempt:
    operation: MirrorOperation
    validate: bool
    outcome: Optional[MirrorErrorClass] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is None


@dataclass
class MirrorResult:
    uri: str
    state: MirrorStep
    attempts: List[MirrorAttempt] = field(default_factory=list)
    remote_uri: Optional[str] = None
    cid: Optional[str] = None
    content_hash: Optional[str] = None
    last_error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.state is MirrorStep.DONE


def content_hash(payload: dict) -> str:
    return hashlib.sha256(
        json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    ).hexdigest()


class RemoteMirror:
    """
    Mirror locally committed records into the author's remote repository.

    Args:
        collection: NSID of the record collection, also used as `$type`
        metrics_client: Metrics sink for attempts and results
        attempt_timeout: Seconds allowed for each remote call
        retry_scheduler: Called with the record uri when a mirror is abandoned
            on a retryable failure
    """

    def __init__(
        self,
        collection: str,
        metrics_client: MetricsClient,
        attempt_timeout: float = 10.0,
        retry_scheduler: Optional[MirrorRetryScheduler] = None,
    ) -> None:
        self.collection = collection
        self._metrics_client = metrics_client
        self._attempt_timeout = attempt_timeout
        self._retry_scheduler = retry_scheduler

    async def mirror(
        self,
        record: ContentRecord,
        repo_client: RepoClient,
        schedule_retry: bool = True,
    ) -> MirrorResult:
        """
        Write `record` to the remote repository. Never raises for remote failures.

        Set `schedule_retry` to False when the caller manages retries itself.
        """
        result = MirrorResult(uri=record.uri, state=MirrorStep.PUT_VALIDATED)

        try:
            address = parse_record_uri(record.uri)
        except ValueError as e:
            result.state = MirrorStep.ABANDON
            result.last_error = e
            self._report(result)
            return result

        if address.collection != self.collection:
            logger.warning(
                f"Not mirroring {record.uri}: collection is not {self.collection}"
            )
            result.state = MirrorStep.ABANDON
            self._report(result)
            return result

        payload = to_repo_record(record, self.collection)
        result.content_hash = content_hash(payload)

        step = MirrorStep.PUT_VALIDATED
        while not step.terminal:
            operation = step.operation
            validate = bool(step.validate)
            if operation is MirrorOperation.PUT:
                call = repo_client.put_record(
                    address.repo, address.collection, address.rkey, payload, validate
                )
            else:
                call = repo_client.create_record(
                    address.repo, address.collection, address.rkey, payload, validate
                )

            attempt = MirrorAttempt(operation=operation, validate=validate)
            try:
                write: RemoteWriteResult = await asyncio.wait_for(
                    call, self._attempt_timeout
                )
                result.remote_uri = write.uri or record.uri
                result.cid = write.cid
            except Exception as e:
                attempt.outcome = classify(e)
                attempt.error = str(e) or type(e).__name__
                result.last_error = e

            result.attempts.append(attempt)
            self._metrics_client.increment(
                "atstore.mirror.attempt",
                1,
                tag_dict={
                    "operation": operation.value,
                    "validate": str(validate).lower(),
                    "outcome": attempt.outcome.value if attempt.outcome else "ok",
                },
            )
            step = next_step(step, attempt.outcome)

        result.state = step
        if result.succeeded:
            result.last_error = None
        self._report(result)

        if (
            not result.succeeded
            and schedule_retry
            and result.last_error is not None
            and is_retryable(result.last_error)
        ):
            await self.defer(record.uri)

        return result

    async def defer(self, uri: str) -> bool:
        """Hand a record to the retry scheduler. Returns False when none is configured."""
        if self._retry_scheduler is None:
            return False
        try:
            await self._retry_scheduler(uri)
        except Exception:
            logger.exception(f"Unable to schedule mirror retry for {uri}")
            return False
        return True

    async def mirror_delete(self, uri: str, repo_client: RepoClient) -> MirrorResult:
        """Remove a record from the remote repository. A missing record counts as done."""
        result = MirrorResult(uri=uri, state=MirrorStep.ABANDON)

        try:
            address = parse_record_uri(uri)
        except ValueError as e:
            result.last_error = e
            self._report(result, MirrorOperation.DELETE)
            return result

        attempt = MirrorAttempt(operation=MirrorOperation.DELETE, validate=False)
        try:
            await asyncio.wait_for(
                repo_client.delete_record(
                    address.repo, address.collection, address.rkey
                ),
                self._attempt_timeout,
            )
        except Exception as e:
            attempt.outcome = classify(e)
            attempt.error = str(e) or type(e).__name__
            result.last_error = e

        result.attempts.append(attempt)
        if attempt.outcome is None or attempt.outcome is MirrorErrorClass.NOT_FOUND:
            result.state = MirrorStep.DONE
            result.last_error = None
        self._report(result, MirrorOperation.DELETE)
        return result

    def _report(
        self, result: MirrorResult, kind: MirrorOperation = MirrorOperation.PUT
    ) -> None:
        tags = {"kind": "delete" if kind is MirrorOperation.DELETE else "write"}
        if result.succeeded:
            logger.info(
                f"Mirrored {result.uri} remote={result.remote_uri} cid={result.cid} hash={result.content_hash}"
            )
            self._metrics_client.increment("atstore.mirror.done", 1, tag_dict=tags)
            return

        steps = ", ".join(
            f"{a.operation.value}(validate={a.validate}):{a.outcome.value if a.outcome else 'ok'}"
            for a in result.attempts
        )
        logger.warning(
            f"Abandoned mirror of {result.uri} after [{steps}]: {result.last_error}"
        )
        self._metrics_client.increment("atstore.mirror.abandon", 1, tag_dict=tags)
