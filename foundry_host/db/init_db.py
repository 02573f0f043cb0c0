"""Create all tables directly, for local development without Alembic."""

import asyncio
import logging

from foundry_host.db.base_class import Base
from foundry_host.db.session import engine
from foundry_host.models import instance, license_pool, license_reservation, notification, scheduled_session  # noqa: F401


async def init_db(bind=engine):
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(init_db())
    logging.info("Database tables created")
