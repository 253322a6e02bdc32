from sqlalchemy import String, orm
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import mapped_column

from typing_extensions import Annotated

str512 = Annotated[str, 512]
str1024 = Annotated[str, 1024]
keypk = Annotated[str, mapped_column(String(512), primary_key=True)]


class Base(orm.DeclarativeBase):
    type_annotation_map = {
        str512: String(512),
        str1024: String(1024),
        keypk: String(512),
    }


def dialect_insert(dialect_name: str, model):
    """Return an INSERT construct that supports ON CONFLICT for the given dialect.

    Both PostgreSQL and SQLite expose `on_conflict_do_update` with the same
    signature, so statement builders can stay dialect-agnostic.
    """
    if dialect_name == "postgresql":
        return postgresql.insert(model)
    if dialect_name == "sqlite":
        return sqlite.insert(model)
    raise ValueError(f"Unsupported database dialect for upserts: {dialect_name}")
