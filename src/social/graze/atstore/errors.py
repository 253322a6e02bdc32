"""
Error taxonomy for the atstore service.

Local store failures (`StorageError`) are fatal to the request that triggered
them. Absence is usually returned as `None`; `NotFoundError` exists for the
few call sites where absence has to cross a boundary as an exception.
`ConflictError` covers duplicate creates and ownership mismatches.

`RemoteRepositoryError` and its subclasses describe failures of the remote
repository on the user's PDS. They carry a structured `RemoteErrorKind` and are
only ever consumed by the mirror engine and the session lifecycle; they are
never surfaced to the caller of a local write.
"""

from enum import Enum
from typing import Optional


class StorageError(Exception):
    """A local database operation failed."""

    @staticmethod
    def database(operation: str, detail: str = "") -> "StorageError":
        return StorageError(
            f"error-store-1000 Database operation failed: {operation} {detail}".rstrip()
        )


class SerializationError(StorageError):
    """A stored payload could not be encoded or decoded."""

    @staticmethod
    def encode(key: str, detail: str = "") -> "SerializationError":
        return SerializationError(
            f"error-store-1001 Unable to serialize payload for key {key}: {detail}"
        )

    @staticmethod
    def decode(key: str, detail: str = "") -> "SerializationError":
        return SerializationError(
            f"error-store-1002 Unable to deserialize payload for key {key}: {detail}"
        )


class NotFoundError(Exception):
    """A requested row does not exist."""

    @staticmethod
    def record(uri: str) -> "NotFoundError":
        return NotFoundError(f"error-store-1100 Record not found: {uri}")

    @staticmethod
    def author_records(author_id: str) -> "NotFoundError":
        return NotFoundError(f"error-store-1101 No records for author: {author_id}")


class ConflictError(Exception):
    """A write collided with an existing row or with its owner."""

    @staticmethod
    def duplicate(uri: str) -> "ConflictError":
        return ConflictError(f"error-store-1200 Record already exists: {uri}")

    @staticmethod
    def ownership(uri: str) -> "ConflictError":
        return ConflictError(
            f"error-store-1201 Record {uri} belongs to a different author"
        )


class RecordValidationError(ValueError):
    """Record fields violate the record lexicon constraints."""


class RemoteErrorKind(str, Enum):
    """Structured failure kind reported by the remote repository client."""

    SCHEMA_INVALID = "schema_invalid"
    NOT_FOUND = "not_found"
    TRANSPORT = "transport"
    OTHER = "other"


class RemoteRepositoryError(Exception):
    """
    A remote repository call failed.

    Attributes:
        kind: Structured failure kind used to drive mirror decisions
        error: XRPC error code from the response body, when there was one
        status: HTTP status of the response, when there was one
    """

    kind: RemoteErrorKind = RemoteErrorKind.OTHER

    def __init__(
        self,
        message: str,
        error: Optional[str] = None,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.status = status


class RemoteSchemaInvalidError(RemoteRepositoryError):
    kind = RemoteErrorKind.SCHEMA_INVALID


class RemoteNotFoundError(RemoteRepositoryError):
    kind = RemoteErrorKind.NOT_FOUND


class RemoteTransportError(RemoteRepositoryError):
    kind = RemoteErrorKind.TRANSPORT


class RemoteOtherError(RemoteRepositoryError):
    kind = RemoteErrorKind.OTHER
