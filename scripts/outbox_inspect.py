#!/usr/bin/env python3
"""Simple CLI to inspect the context outbox."""
import argparse
import asyncio
import json
import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from planner_service import storage
from planner_service.config import get_settings


async def main(status: str, limit: int):
    cfg = get_settings()
    engine, sm = await storage.create_engine_and_sessionmaker(cfg.DATABASE_URL)
    try:
        await storage.init_models(engine)
        rows = await storage.list_outbox(sm, status=status or None, limit=limit)
        for i, row in enumerate(rows):
            print(i, json.dumps({k: v for k, v in row.items() if k != "embedding"}, default=str))
        for s in ("pending", "done", "dead"):
            print(f"{s}: {await storage.count_outbox(sm, s)}")
    finally:
        await engine.dispose()


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--status", default="pending", help="pending, done, dead or empty for all")
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()
    asyncio.run(main(args.status, args.limit))
