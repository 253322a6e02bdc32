"""Local authoritative store for content records."""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from social.graze.atstore.errors import ConflictError, StorageError
from social.graze.atstore.model.records import (
    ContentRecord,
    ContentRecordRow,
    insert_record_stmt,
    record_from_row,
    upsert_record_stmt,
    utcnow,
)

logger = logging.getLogger(__name__)


class RecordStore:
    """
    The `content_records` table and its read patterns.

    Every write stamps `indexed_at` with the store's clock, independent of the
    caller-supplied `created_at` and `updated_at`. `author_id` and `created_at`
    are fixed at insert time; `upsert` refuses to modify a row owned by a
    different author.

    Args:
        database_session_maker: SQLAlchemy async session factory
        clock: Source of the current time, used for `indexed_at`
    """

    def __init__(
        self,
        database_session_maker: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._database_session_maker = database_session_maker
        self._clock = clock

    def _stamp(self, record: ContentRecord) -> ContentRecord:
        return record.model_copy(
            update={"indexed_at": self._clock().replace(microsecond=0)}
        )

    async def create(self, record: ContentRecord) -> ContentRecord:
        """Insert a new record, raising ConflictError if the uri is taken."""
        record = self._stamp(record)
        try:
            async with self._database_session_maker() as database_session:
                async with database_session.begin():
                    dialect_name = database_session.get_bind().dialect.name
                    await database_session.execute(
                        insert_record_stmt(dialect_name, record)
                    )
        except IntegrityError as e:
            raise ConflictError.duplicate(record.uri) from e
        except SQLAlchemyError as e:
            raise StorageError.database("create content_records", str(e)) from e

        logger.debug("Created record %s", record.uri)
        return record

    async def upsert(self, record: ContentRecord) -> ContentRecord:
        """
        Insert the record or update the mutable fields of an existing one.

        Existence check and write happen in one statement, so two concurrent
        upserts of the same uri can never both insert or lose one another's
        update. Returns the record as stored, which keeps the original
        `created_at` when the row already existed.
        """
        record = self._stamp(record)
        try:
            async with self._database_session_maker() as database_session:
                async with database_session.begin():
                    dialect_name = database_session.get_bind().dialect.name
                    result = await database_session.execute(
                        upsert_record_stmt(dialect_name, record)
                    )
                    if result.scalar_one_or_none() is None:
                        raise ConflictError.ownership(record.uri)

                    row_stmt = select(ContentRecordRow).where(
                        ContentRecordRow.uri == record.uri
                    )
                    row = (await database_session.scalars(row_stmt)).one()
                    stored = record_from_row(row)
        except SQLAlchemyError as e:
            raise StorageError.database("upsert content_records", str(e)) from e

        logger.debug("Upserted record %s", record.uri)
        return stored

    async def delete(self, uri: str, author_id: Optional[str] = None) -> bool:
        """
        Delete a record by uri. Deleting an absent uri is not an error.

        When `author_id` is given the row is only deleted if it belongs to that
        author; a row owned by someone else raises ConflictError. Returns True
        when a row was removed.
        """
        try:
            async with self._database_session_maker() as database_session:
                async with database_session.begin():
                    stmt = delete(ContentRecordRow).where(ContentRecordRow.uri == uri)
                    if author_id is not None:
                        stmt = stmt.where(ContentRecordRow.author_id == author_id)
                    result = await database_session.execute(stmt)
                    removed = (result.rowcount or 0) > 0

                    if not removed and author_id is not None:
                        owner_stmt = select(ContentRecordRow.author_id).where(
                            ContentRecordRow.uri == uri
                        )
                        owner = (await database_session.scalars(owner_stmt)).first()
                        if owner is not None:
                            raise ConflictError.ownership(uri)
        except SQLAlchemyError as e:
            raise StorageError.database("delete content_records", str(e)) from e

        return removed

    async def get(self, uri: str) -> Optional[ContentRecord]:
        stmt = select(ContentRecordRow).where(ContentRecordRow.uri == uri)
        rows = await self._select(stmt, "get content_records")
        return next(iter(rows), None)

    async def list_latest(self, limit: int = 10) -> List[ContentRecord]:
        """All records, most recently written first."""
        _check_limit(limit)
        stmt = (
            select(ContentRecordRow)
            .order_by(ContentRecordRow.indexed_at.desc(), ContentRecordRow.uri.desc())
            .limit(limit)
        )
        return await self._select(stmt, "list_latest content_records")

    async def list_published(self, limit: int = 20) -> List[ContentRecord]:
        """Published records, newest by `created_at` first."""
        _check_limit(limit)
        stmt = (
            select(ContentRecordRow)
            .where(ContentRecordRow.published.is_(True))
            .order_by(ContentRecordRow.created_at.desc(), ContentRecordRow.uri.desc())
            .limit(limit)
        )
        return await self._select(stmt, "list_published content_records")

    async def latest_by_author(self, author_id: str) -> Optional[ContentRecord]:
        stmt = (
            select(ContentRecordRow)
            .where(ContentRecordRow.author_id == author_id)
            .order_by(ContentRecordRow.created_at.desc(), ContentRecordRow.uri.desc())
            .limit(1)
        )
        rows = await self._select(stmt, "latest_by_author content_records")
        return next(iter(rows), None)

    async def _select(self, stmt, operation: str) -> List[ContentRecord]:
        try:
            async with self._database_session_maker() as database_session:
                rows = (await database_session.scalars(stmt)).all()
                return [record_from_row(row) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError.database(operation, str(e)) from e


def _check_limit(limit: int) -> None:
    if limit < 1:
        raise ValueError("limit must be a positive integer")
