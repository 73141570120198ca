"""Re-dispatch provider events that were received but never processed.

Events stay unprocessed when every delivery attempt failed and the provider
gave up retrying. Handlers are idempotent, so replaying is safe.

Run from repo root:
    python -m scripts.replay_webhook_backlog [--older-than SECONDS] [--limit N]
"""

import argparse
import asyncio

from app.api.deps import build_dispatcher
from app.core.config import get_settings
from app.db.base import close_db, get_session_factory, init_db
from app.webhooks.dispatcher import Outcome
from app.webhooks.store import SqlEventStore


async def main(older_than: int, limit: int) -> None:
    await init_db(create_schema=False)
    try:
        store = SqlEventStore(get_session_factory(), lease_seconds=get_settings().webhook_claim_lease_seconds)
        dispatcher = build_dispatcher()

        rows = await store.list_backlog(older_than_seconds=older_than, limit=limit)
        print(f"Found {len(rows)} unprocessed event(s)")

        failed = 0
        for row in rows:
            result = await dispatcher.replay(row)
            if result.outcome is Outcome.PROCESSING_FAILED:
                failed += 1
            print(f"  {row.provider_event_id} | {row.event_type} | attempts={row.attempts} -> {result.outcome.value}")

        await dispatcher.drain()
        print(f"\nDONE: {len(rows) - failed} processed, {failed} still failing")
    finally:
        await close_db()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--older-than", type=int, default=300, help="only events received this many seconds ago")
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()
    asyncio.run(main(args.older_than, args.limit))
