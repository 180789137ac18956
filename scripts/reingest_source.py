import asyncio
import logging
import os
import sys
import uuid

# Ensure src is in pythonpath
sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from dotenv import load_dotenv
load_dotenv()

from concierge_rag.core.cache import TTLCache
from concierge_rag.config import settings
from concierge_rag.ingestion.worker import run_ingestion


async def main(source_ids):
    cache = TTLCache(ttl=settings.model_cache_ttl)
    failures = 0

    for source_id in source_ids:
        print(f"Ingesting source {source_id}...")
        result = await run_ingestion(source_id, cache)

        if result is None:
            print("  not started (see log)")
            failures += 1
        elif result.status == "failed":
            print(f"  failed at {result.progress}%: {result.error}")
            failures += 1
        else:
            print(f"  completed: {result.total_chunks} chunks")

    return 1 if failures else 0


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("usage: reingest_source.py <source-id> [<source-id> ...]")
        sys.exit(2)

    try:
        ids = [uuid.UUID(arg) for arg in sys.argv[1:]]
    except ValueError as e:
        print(f"Invalid source id: {e}")
        sys.exit(2)

    logging.basicConfig(level=logging.INFO)
    sys.exit(asyncio.run(main(ids)))
