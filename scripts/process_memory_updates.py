#!/usr/bin/env python3
"""Apply queued memory updates and expire abandoned retrieval sessions

Runs once by default; pass --loop to keep polling (e.g. as a sidecar worker).
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from airouter.services.memory import get_memory_service  # noqa: E402
from airouter.storage.database import close_db  # noqa: E402
from airouter.utils.logger import get_logger  # noqa: E402

logger = get_logger("airouter.worker")


async def run_once(batch_size: int | None) -> dict[str, int]:
    memory = get_memory_service()
    counts = await memory.process_pending_updates(batch_size)
    counts["expired"] = await memory.expire_stale_sessions()
    return counts


async def main(args: argparse.Namespace) -> int:
    try:
        while True:
            counts = await run_once(args.batch_size)
            logger.info(
                f"Applied {counts['applied']}, failed {counts['failed']}, "
                f"expired {counts['expired']} sessions"
            )
            if not args.loop:
                return 1 if counts["failed"] else 0
            await asyncio.sleep(args.interval)
    finally:
        await close_db()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--loop", action="store_true", help="Keep polling")
    parser.add_argument("--interval", type=float, default=30.0, help="Seconds between polls")
    parser.add_argument("--batch-size", type=int, default=None, help="Updates per poll")

    try:
        sys.exit(asyncio.run(main(parser.parse_args())))
    except KeyboardInterrupt:
        print("\n⚠️  Worker stopped")
        sys.exit(1)
