import argparse
import asyncio
import base64
import logging

from cryptography.fernet import Fernet
from jwcrypto import jwk
from sqlalchemy.ext.asyncio import create_async_engine
from ulid import ULID

from social.graze.atstore.model.base import Base

logger = logging.getLogger(__name__)


async def genJwk() -> None:
    key = jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")
    print(key.export(private_key=True))


async def genCryptoKey() -> None:
    key = Fernet.generate_key()
    print(base64.b64encode(key).decode("utf-8"))


async def createTables(database_url: str) -> None:
    engine = create_async_engine(database_url)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    finally:
        await engine.dispose()
    print(f"Created tables: {', '.join(sorted(Base.metadata.tables))}")


async def realMain() -> None:
    parser = argparse.ArgumentParser(
        prog="atstoreutil", description="atstore utilities"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    _ = subparsers.add_parser("gen-jwk", help="Generate a service token signing JWK")
    _ = subparsers.add_parser("gen-crypto", help="Generate a session encryption key")
    create_tables = subparsers.add_parser(
        "create-tables", help="Create the database tables without alembic"
    )
    create_tables.add_argument(
        "database_url", help="SQLAlchemy async URL, e.g. sqlite+aiosqlite:///atstore.db"
    )

    args = vars(parser.parse_args())
    command = args.get("command", None)

    if command == "gen-jwk":
        await genJwk()
    elif command == "gen-crypto":
        await genCryptoKey()
    elif command == "create-tables":
        await createTables(args["database_url"])


def main() -> None:
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
