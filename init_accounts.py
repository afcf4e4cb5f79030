import asyncio
import os
import sys

import tigerbeetle as tb

from boxoffice.infra.sql import make_async_engine
from boxoffice.logger_config import logger
from boxoffice.model.accounting import _postgres, _tigerbeetle
from boxoffice.model.db import Base
from boxoffice.model.settlementgate._postgres import create_schema


async def main(currencies):
    database_url = os.getenv("DATABASE_URL", "sqlite:///./boxoffice.db")
    engine, _, _, _ = make_async_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await _postgres.create_accounts(conn, currencies)
        await create_schema(conn)
    await engine.dispose()
    logger.info("schema ready")

    if os.getenv("ACCT_BACKEND", "pg").lower() == "tb":
        client = tb.ClientAsync(
            cluster_id=int(os.getenv("TB_CLUSTER_ID", "0")),
            replica_addresses=os.getenv("TB_ADDRESS", "3000"),
        )
        try:
            ok = await _tigerbeetle.create_accounts(client, currencies)
        finally:
            await client.close()
        if not ok:
            sys.exit(1)


if __name__ == '__main__':
    asyncio.run(main([c.upper() for c in sys.argv[1:]] or ["NGN"]))
