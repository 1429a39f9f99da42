#!/usr/bin/env python3
"""
StakeFlow Engine Runner: opens the store and runs the periodic jobs:
  - Epoch advance (weekly emission, accrual boundary)
  - Cooldown finalization sweep
  - Ledger intent submission with retry/backoff (if a submission URL is set)
  - Ledger event indexing (if an RPC URL is set)

Usage:
    python run_engine.py --config stakeflow.toml
    python run_engine.py --db data/stakeflow.db --once      # single pass, JSON out
    python run_engine.py --status                           # print status and exit

Environment variables (alternative to flags):
    STAKEFLOW_DB_PATH, STAKEFLOW_LOG_LEVEL, STAKEFLOW_LOG_FMT, STAKEFLOW_RPC_URL, ...
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys

# ---------------------------------------------------------------------------
# Ensure the project root is in sys.path so imports work before pip install
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from stakeflow_core.config import load_config  # noqa: E402
from stakeflow_core.engine import StakingEngine  # noqa: E402
from stakeflow_core.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger("stakeflow_engine")


# ===================================================================
#  Main entry point
# ===================================================================

def parse_args(argv: list[str] | None = None):
    p = argparse.ArgumentParser(description="StakeFlow staking engine")
    p.add_argument("--config", default=None, help="Path to stakeflow.toml config file")
    p.add_argument("--db", default=None, help="SQLite database path")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    p.add_argument("--log-format", choices=["human", "json"], default=None)
    p.add_argument("--once", action="store_true",
                   help="Run every job once, print the results and exit")
    p.add_argument("--status", action="store_true",
                   help="Print engine status and exit")
    return p.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    # Load config (TOML + env overrides)
    cfg = load_config(args.config)

    # CLI flags override config
    if args.db:
        cfg.storage.path = args.db
    if args.log_level:
        cfg.logging.level = args.log_level.upper()
    if args.log_format:
        cfg.logging.format = args.log_format

    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    engine = StakingEngine(cfg)
    engine.initialize()

    try:
        if args.status:
            print(json.dumps(engine.status(), indent=2, default=str))
            return 0

        if args.once:
            results = await engine.scheduler.run_due()
            print(json.dumps(
                {name: r.to_dict() for name, r in results.items()},
                indent=2, default=str,
            ))
            return 0

        await engine.start()
        logger.info(f"StakeFlow engine running (db={cfg.storage.path})")
        try:
            while True:
                await asyncio.sleep(1)
        except (KeyboardInterrupt, asyncio.CancelledError):
            pass
        await engine.stop()
        return 0
    finally:
        engine.close()


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        return asyncio.run(main())


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        raise SystemExit(asyncio.run(main()))
