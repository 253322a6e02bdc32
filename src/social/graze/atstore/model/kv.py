"""Key-value tables for OAuth flow state and session credentials.

Both tables share the same shape: an opaque string key and an opaque
serialized payload. `created_at` is the epoch second of the last write and is
only used to purge abandoned authorization attempts.
"""

from typing import Type, Union

from sqlalchemy import BigInteger, Text
from sqlalchemy.orm import Mapped, mapped_column

from social.graze.atstore.model.base import Base, dialect_insert, keypk


class AuthState(Base):
    """In-flight authorization attempt, keyed by the random OAuth state token."""

    __tablename__ = "auth_state"

    key: Mapped[keypk]
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)


class AuthSession(Base):
    """Session credentials for one identity, keyed by DID."""

    __tablename__ = "auth_session"

    key: Mapped[keypk]
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


KeyValueModel = Union[Type[AuthState], Type[AuthSession]]


def upsert_kv_stmt(
    dialect_name: str, model: KeyValueModel, key: str, payload: str, created_at: int
):
    """Create an atomic upsert statement for a key-value row.

    Inserts the row or, when the key already exists, overwrites the payload in
    the same statement so concurrent writers to one key cannot interleave.
    """
    return (
        dialect_insert(dialect_name, model)
        .values(
            [
                {
                    "key": key,
                    "payload": payload,
                    "created_at": created_at,
                }
            ]
        )
        .on_conflict_do_update(
            index_elements=["key"],
            set_={
                "payload": payload,
                "created_at": created_at,
            },
        )
    )
