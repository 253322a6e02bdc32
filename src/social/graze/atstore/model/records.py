"""Content record model, lexicon validation and record addressing.

`ContentRecordRow` is the SQLAlchemy table that holds the authoritative copy of
every record. `ContentRecord` is the validated domain object handed between the
store, the HTTP handlers and the mirror engine.

Record URIs have the form `{scheme}://{repo}/{collection}/{rkey}`. The remote
address of a record is derived from its URI alone, see `parse_record_uri`.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import BigInteger, Boolean, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from ulid import ULID

from social.graze.atstore.errors import RecordValidationError
from social.graze.atstore.model.base import Base, dialect_insert, str512

MAX_TITLE_LENGTH = 200
MAX_BODY_LENGTH = 10000
MAX_SUMMARY_LENGTH = 500
MAX_TAGS = 10
MAX_TAG_LENGTH = 50


class ContentRecordRow(Base):
    """Locally authoritative copy of a user-authored record.

    Timestamps are stored as integer epoch seconds and tags as a JSON array.
    """

    __tablename__ = "content_records"

    uri: Mapped[str] = mapped_column(String(1024), primary_key=True)
    author_id: Mapped[str512]
    title: Mapped[str] = mapped_column(String(MAX_TITLE_LENGTH), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    indexed_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        Index("idx_content_records_author_created", "author_id", "created_at"),
        Index("idx_content_records_indexed", "indexed_at"),
        Index("idx_content_records_published_created", "published", "created_at"),
    )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_epoch(value: datetime) -> int:
    return int(value.timestamp())


def from_epoch(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class ContentRecord(BaseModel):
    """A validated content record.

    Field limits follow the blog post record lexicon: a 1-200 character title,
    a 1-10000 character body, an optional summary of at most 500 characters and
    at most 10 unique tags of at most 50 characters each.
    """

    uri: str
    author_id: str
    title: str = Field(min_length=1, max_length=MAX_TITLE_LENGTH)
    body: str = Field(min_length=1, max_length=MAX_BODY_LENGTH)
    summary: Optional[str] = Field(default=None, max_length=MAX_SUMMARY_LENGTH)
    tags: List[str] = Field(default_factory=list)
    published: bool = False
    created_at: datetime = Field(default_factory=utcnow, validate_default=True)
    updated_at: datetime = Field(default_factory=utcnow, validate_default=True)
    indexed_at: datetime = Field(default_factory=utcnow, validate_default=True)

    @field_validator("tags", mode="before")
    @classmethod
    def normalize_tags(cls, v) -> List[str]:
        """Treat absent tags as empty and drop duplicates, keeping first-seen order."""
        if v is None:
            return []
        if isinstance(v, str):
            raise ValueError("tags must be a sequence of strings")
        tags: List[str] = []
        for tag in v:
            if not isinstance(tag, str):
                raise ValueError("tags must be a sequence of strings")
            if len(tag) > MAX_TAG_LENGTH:
                raise ValueError(
                    f"Each tag cannot be longer than {MAX_TAG_LENGTH} characters"
                )
            if tag not in tags:
                tags.append(tag)
        if len(tags) > MAX_TAGS:
            raise ValueError(f"Cannot have more than {MAX_TAGS} tags")
        return tags

    @field_validator("created_at", "updated_at", "indexed_at", mode="after")
    @classmethod
    def truncate_timestamp(cls, v: datetime) -> datetime:
        # Stored with second precision; keep in-memory values comparable.
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc).replace(microsecond=0)

    @property
    def address(self) -> "RecordAddress":
        return parse_record_uri(self.uri)

    def add_tag(self, tag: str) -> None:
        if len(tag) > MAX_TAG_LENGTH:
            raise RecordValidationError(
                f"Tag cannot be longer than {MAX_TAG_LENGTH} characters"
            )
        if tag in self.tags:
            return
        if len(self.tags) >= MAX_TAGS:
            raise RecordValidationError(f"Cannot have more than {MAX_TAGS} tags")
        self.tags.append(tag)

    def publish(self) -> None:
        self.published = True
        self.updated_at = utcnow().replace(microsecond=0)

    def unpublish(self) -> None:
        self.published = False
        self.updated_at = utcnow().replace(microsecond=0)


@dataclass(frozen=True)
class RecordAddress:
    """Remote address of a record: repository, collection and record key."""

    repo: str
    collection: str
    rkey: str


def generate_rkey() -> str:
    return str(ULID())


def make_record_uri(repo: str, collection: str, rkey: str, scheme: str = "at") -> str:
    return f"{scheme}://{repo}/{collection}/{rkey}"


def parse_record_uri(uri: str) -> RecordAddress:
    """Derive the remote address of a record from its URI.

    The record key is the last path segment, the repository is the authority
    and everything in between is the collection.

    >>> parse_record_uri("at://did:plc:abc/com.example.post/3k2")
    RecordAddress(repo='did:plc:abc', collection='com.example.post', rkey='3k2')
    """
    scheme, sep, rest = uri.partition("://")
    if not sep or not scheme:
        raise ValueError(f"Invalid record uri: {uri}")

    segments = rest.split("/")
    if len(segments) < 3 or any(len(segment) == 0 for segment in segments):
        raise ValueError(f"Invalid record uri: {uri}")

    return RecordAddress(
        repo=segments[0],
        collection="/".join(segments[1:-1]),
        rkey=segments[-1],
    )


def encode_tags(tags: Optional[List[str]]) -> str:
    return json.dumps(list(tags or []))


def decode_tags(value: Optional[str]) -> List[str]:
    if value is None or len(value) == 0:
        return []
    decoded = json.loads(value)
    if decoded is None:
        return []
    return [str(tag) for tag in decoded]


def record_row_values(record: ContentRecord) -> Dict[str, Any]:
    """Flatten a record into column values for `content_records`."""
    return {
        "uri": record.uri,
        "author_id": record.author_id,
        "title": record.title,
        "body": record.body,
        "summary": record.summary,
        "tags": encode_tags(record.tags),
        "published": record.published,
        "created_at": to_epoch(record.created_at),
        "updated_at": to_epoch(record.updated_at),
        "indexed_at": to_epoch(record.indexed_at),
    }


def record_from_row(row: ContentRecordRow) -> ContentRecord:
    return ContentRecord(
        uri=row.uri,
        author_id=row.author_id,
        title=row.title,
        body=row.body,
        summary=row.summary,
        tags=decode_tags(row.tags),
        published=bool(row.published),
        created_at=from_epoch(row.created_at),
        updated_at=from_epoch(row.updated_at),
        indexed_at=from_epoch(row.indexed_at),
    )


def to_repo_record(record: ContentRecord, collection: str) -> Dict[str, Any]:
    """Build the lexicon payload written to the remote repository.

    Empty tag lists are omitted rather than sent as `[]`.
    """
    payload: Dict[str, Any] = {
        "$type": collection,
        "title": record.title,
        "content": record.body,
        "published": record.published,
        "createdAt": record.created_at.isoformat().replace("+00:00", "Z"),
        "updatedAt": record.updated_at.isoformat().replace("+00:00", "Z"),
    }
    if record.summary is not None:
        payload["summary"] = record.summary
    if len(record.tags) > 0:
        payload["tags"] = list(record.tags)
    return payload


def insert_record_stmt(dialect_name: str, record: ContentRecord):
    """Create a plain insert; a duplicate uri fails with an integrity error."""
    return dialect_insert(dialect_name, ContentRecordRow).values(
        [record_row_values(record)]
    )


def upsert_record_stmt(dialect_name: str, record: ContentRecord):
    """Create an atomic upsert statement for a content record.

    On conflict only the mutable fields are overwritten, and only when the
    stored row belongs to the same author. `author_id` and `created_at` are
    never touched by the update branch. The statement returns the uri of the
    inserted or updated row; an empty result means the ownership check failed.
    """
    values = record_row_values(record)
    stmt = dialect_insert(dialect_name, ContentRecordRow).values([values])
    return stmt.on_conflict_do_update(
        index_elements=["uri"],
        set_={
            "title": stmt.excluded.title,
            "body": stmt.excluded.body,
            "summary": stmt.excluded.summary,
            "tags": stmt.excluded.tags,
            "published": stmt.excluded.published,
            "updated_at": stmt.excluded.updated_at,
            "indexed_at": stmt.excluded.indexed_at,
        },
        where=ContentRecordRow.author_id == stmt.excluded.author_id,
    ).returning(ContentRecordRow.uri)
