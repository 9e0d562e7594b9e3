#!/usr/bin/env python3
"""Create the span ledger table and the timeline NOTIFY trigger for development."""

import asyncio

from sqlalchemy.ext.asyncio import create_async_engine

from causable.api.sse.change_source import install_notify_trigger
from causable.core.config import settings
from causable.core.database import Base
from causable.spans.models import SpanRecord


async def main():
    """Create tables, then install the trigger the Postgres change source listens to."""

    engine = create_async_engine(settings.database_url)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print(f"✅ Table ready: {SpanRecord.__tablename__}")

    await install_notify_trigger(
        engine,
        table=SpanRecord.__tablename__,
        channel=settings.notify_channel,
    )
    print(f"✅ Trigger installed: NOTIFY {settings.notify_channel} on insert")

    print("\nTest it by inserting a row by hand:")
    print(
        f'  INSERT INTO {SpanRecord.__tablename__} (id, seq, entity_type, who, "this", at, '
        "visibility, is_deleted)"
    )
    print("  VALUES (gen_random_uuid()::text, 0, 'test', 'developer', 'verify_test', now(), "
          "'private', false);")
    print("and watching `python verify_stream.py` with CAUSABLE_CHANGE_SOURCE=postgres.")

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
