"""Atomic key-value store backing OAuth flow state and sessions.

A `KeyValueStore` wraps one of the key-value tables (`auth_state` or
`auth_session`) and a pydantic payload type. Payloads are serialized to JSON
and optionally encrypted with Fernet before they reach the database.
"""

import logging
from datetime import datetime
from typing import Generic, Optional, Type, TypeVar

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel, ValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from social.graze.atstore.errors import SerializationError, StorageError
from social.graze.atstore.model.kv import KeyValueModel, upsert_kv_stmt
from social.graze.atstore.model.records import to_epoch, utcnow

logger = logging.getLogger(__name__)

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class KeyValueStore(Generic[PayloadT]):
    """
    Generic upsert/get/delete store keyed by an opaque string.

    Writes to the same key are serialized by the database: `upsert` is a single
    `INSERT ... ON CONFLICT DO UPDATE` statement, so concurrent writers always
    leave exactly one row holding the last committed payload.

    Absence is a normal outcome: `get` returns None for unknown keys and
    `delete` of an unknown key is a no-op. The store does not expire rows on
    its own; see `purge_older_than`.
    """

    def __init__(
        self,
        database_session_maker: async_sessionmaker[AsyncSession],
        model: KeyValueModel,
        payload_type: Type[PayloadT],
        fernet: Optional[Fernet] = None,
    ) -> None:
        self._database_session_maker = database_session_maker
        self._model = model
        self._payload_type = payload_type
        self._fernet = fernet

    @property
    def table_name(self) -> str:
        return self._model.__tablename__

    def encode(self, key: str, payload: PayloadT) -> str:
        try:
            serialized = payload.model_dump_json()
        except (ValueError, TypeError) as e:
            raise SerializationError.encode(key, str(e)) from e

        if self._fernet is None:
            return serialized
        return self._fernet.encrypt(serialized.encode("utf-8")).decode("ascii")

    def decode(self, key: str, value: str) -> PayloadT:
        try:
            if self._fernet is not None:
                value = self._fernet.decrypt(value.encode("ascii")).decode("utf-8")
            return self._payload_type.model_validate_json(value)
        except InvalidToken as e:
            raise SerializationError.decode(key, "payload could not be decrypted") from e
        except (ValidationError, ValueError) as e:
            raise SerializationError.decode(key, str(e)) from e

    async def upsert(self, key: str, payload: PayloadT) -> None:
        """Insert the payload for key, overwriting any existing payload."""
        serialized = self.encode(key, payload)
        try:
            async with self._database_session_maker() as database_session:
                async with database_session.begin():
                    dialect_name = database_session.get_bind().dialect.name
                    stmt = upsert_kv_stmt(
                        dialect_name,
                        self._model,
                        key,
                        serialized,
                        to_epoch(utcnow()),
                    )
                    await database_session.execute(stmt)
        except SQLAlchemyError as e:
            raise StorageError.database(f"upsert {self.table_name}", str(e)) from e

    async def get(self, key: str) -> Optional[PayloadT]:
        try:
            async with self._database_session_maker() as database_session:
                stmt = select(self._model.payload).where(self._model.key == key)
                value: Optional[str] = (await database_session.scalars(stmt)).first()
        except SQLAlchemyError as e:
            raise StorageError.database(f"get {self.table_name}", str(e)) from e

        if value is None:
            return None
        return self.decode(key, value)

    async def delete(self, key: str) -> None:
        try:
            async with self._database_session_maker() as database_session:
                async with database_session.begin():
                    await database_session.execute(
                        delete(self._model).where(self._model.key == key)
                    )
        except SQLAlchemyError as e:
            raise StorageError.database(f"delete {self.table_name}", str(e)) from e

    async def delete_all(self) -> None:
        try:
            async with self._database_session_maker() as database_session:
                async with database_session.begin():
                    await database_session.execute(delete(self._model))
        except SQLAlchemyError as e:
            raise StorageError.database(f"delete_all {self.table_name}", str(e)) from e

    async def purge_older_than(self, cutoff: datetime) -> int:
        """Delete rows last written before cutoff, returning how many were removed."""
        try:
            async with self._database_session_maker() as database_session:
                async with database_session.begin():
                    result = await database_session.execute(
                        delete(self._model).where(
                            self._model.created_at < to_epoch(cutoff)
                        )
                    )
                    removed = result.rowcount or 0
        except SQLAlchemyError as e:
            raise StorageError.database(f"purge {self.table_name}", str(e)) from e

        if removed > 0:
            logger.info("Purged %d expired rows from %s", removed, self.table_name)
        return removed
