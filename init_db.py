import argparse
import asyncio
import sys

from seatxfer import config
from seatxfer.auth import ensure_admin
from seatxfer.infra.sql import describe_url, make_async_engine, wait_for_database
from seatxfer.model import Base, Storage


async def init_db(drop: bool, seed_admin: bool) -> None:
    engine, SessionAsync, gated = make_async_engine(config.DATABASE_URL)
    try:
        await wait_for_database(
            engine, config.DB_CONNECT_RETRIES, config.DB_CONNECT_RETRY_DELAY
        )
        async with engine.begin() as conn:
            if drop:
                await conn.run_sync(Base.metadata.drop_all)
                print('✅ tables dropped')
            await conn.run_sync(Base.metadata.create_all)
        print(f'✅ schema ready on {describe_url(config.DATABASE_URL)}')

        if seed_admin:
            async with SessionAsync() as session:
                user = await ensure_admin(Storage(session, gated))
            print(f'✅ admin account: {user.email} (alias {user.unique_email})')
    finally:
        await engine.dispose()


def main():
    ap = argparse.ArgumentParser(
        description="Create the SeatXfer database schema"
    )
    ap.add_argument(
        "--drop", action="store_true",
        help="drop all tables first (destroys data)"
    )
    ap.add_argument(
        "--seed-admin", action="store_true",
        help="create the ADMIN_EMAIL account if it does not exist"
    )
    args = ap.parse_args()

    try:
        asyncio.run(init_db(args.drop, args.seed_admin))
    except Exception as e:
        print(f"!! init_db failed: {e}", file=sys.stderr, flush=True)
        sys.exit(1)


if __name__ == '__main__':
    main()
