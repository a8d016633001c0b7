from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from detector.config import ConfigError, Settings, load_settings
from detector.logs import configure_logging
from detector.sandwich import detect_sandwich
from detector.service import DetectorService
from infra.rpc import RPCPool
from mempool.feed import RPCFeed

log = logging.getLogger("detector")


async def _run_sandwich(settings: Settings, tx_hash: str, block: Optional[int]) -> int:
    rpc = RPCPool(settings.rpc_urls, default_timeout_s=settings.rpc_timeout_s)
    try:
        result = await detect_sandwich(
            RPCFeed(rpc, timeout_s=settings.rpc_timeout_s),
            tx_hash,
            settings.contract_address,
            block_number=block,
        )
    finally:
        await rpc.close()
    print(json.dumps(result.to_dict(), indent=2))
    return 0


async def _run_service(settings: Settings) -> None:
    # Built inside the running loop so its queues and locks bind to it.
    service = DetectorService(settings)
    await service.run_forever()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="mev-detector", description="Mempool MEV detector")
    parser.add_argument("--env-file", default=".env", help="dotenv file to load (optional)")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="monitor the mempool and serve alerts (default)")
    sw = sub.add_parser("sandwich", help="check a mined tx for a sandwich attack")
    sw.add_argument("--tx", required=True, help="victim transaction hash")
    sw.add_argument("--block", type=int, default=None, help="block number (default: from receipt)")
    args = parser.parse_args(argv)

    load_dotenv(args.env_file)
    configure_logging("INFO")
    try:
        settings = load_settings()
    except ConfigError as exc:
        log.error("FATAL: %s", exc)
        return 2

    configure_logging(settings.log_level, Path(settings.log_dir) if settings.log_dir else None)

    if args.command == "sandwich":
        return asyncio.run(_run_sandwich(settings, args.tx, args.block))

    try:
        asyncio.run(_run_service(settings))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
