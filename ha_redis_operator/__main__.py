"""
Entry point: ``python -m ha_redis_operator``.

Settings come from ``HA_REDIS_OPERATOR_*`` environment variables; the
command line overrides the most common ones.
"""

import argparse
import asyncio
import logging
import signal
from dataclasses import replace
from typing import Optional, Sequence

from .config import OperatorConfig
from .runtime import OperatorRuntime


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ha_redis_operator",
        description="Reconcile Redis + Sentinel clusters, users and backups",
    )
    parser.add_argument("--namespace", help="Namespace to watch (default: all namespaces)")
    parser.add_argument("--log-level", help="Log level (default: INFO)")
    parser.add_argument(
        "--no-leader-election",
        action="store_true",
        help="Run the engine without acquiring the lease",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace, environ=None) -> OperatorConfig:
    config = OperatorConfig.from_env(environ)
    overrides = {}
    if args.namespace:
        overrides["namespace"] = args.namespace
    if args.log_level:
        overrides["log_level"] = args.log_level.upper()
    if args.no_leader_election:
        overrides["leader_election"] = False
    return replace(config, **overrides) if overrides else config


async def main(config: OperatorConfig) -> None:
    log = logging.getLogger("ha_redis_operator")
    log.info(f"Starting operator as {config.identity} (namespace: {config.namespace or 'all'})")

    async with OperatorRuntime(config) as runtime:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, runtime.stop)
        await runtime.run()

    log.info("Operator stopped")


def run(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    config = build_config(args)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s  %(name)-24s  %(levelname)-7s  %(message)s",
    )
    asyncio.run(main(config))


if __name__ == "__main__":
    run()
