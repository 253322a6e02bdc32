"""Classify remote repository failures into mirror decisions."""

from enum import Enum

from social.graze.atstore.errors import RemoteErrorKind, RemoteRepositoryError


class MirrorErrorClass(str, Enum):
    SCHEMA_INVALID = "schema_invalid"
    NOT_FOUND = "not_found"
    OTHER = "other"


def classify(error: BaseException) -> MirrorErrorClass:
    """
    Map a failed remote call to the class that drives the next mirror step.

    Only the structured `kind` of a `RemoteRepositoryError` is consulted.
    Transport failures, timeouts and any other exception are `OTHER`.
    """
    if isinstance(error, RemoteRepositoryError):
        if error.kind is RemoteErrorKind.SCHEMA_INVALID:
            return MirrorErrorClass.SCHEMA_INVALID
        if error.kind is RemoteErrorKind.NOT_FOUND:
            return MirrorErrorClass.NOT_FOUND
    return MirrorErrorClass.OTHER


def is_retryable(error: BaseException) -> bool:
    """Whether a mirror abandoned on this error may be tried again later."""
    return classify(error) is MirrorErrorClass.OTHER
