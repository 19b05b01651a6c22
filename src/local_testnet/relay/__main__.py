"""
Mock builder relay entry point.

Usage::

    python -m local_testnet.relay --port 23001 --metrics-port 23002 --network-id 4242

Exits cleanly on SIGTERM or SIGINT.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from local_testnet.console import setup_logging

from .server import RelayConfig, RelayServer

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


async def serve(config: RelayConfig) -> None:
    """Run the relay until a termination signal arrives."""
    server = RelayServer(config)
    shutdown = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, shutdown.set)

    try:
        await server.start()
        await shutdown.wait()
    finally:
        await server.stop()
        for sig in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="python -m local_testnet.relay",
        description="Builder relay that accepts registrations and never bids",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--host", default="127.0.0.1", help="Address to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, required=True, help="Builder API port")
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Additional port serving /metrics",
    )
    parser.add_argument("--network-id", type=int, default=4242, help="Chain id of the network")
    parser.add_argument(
        "--genesis-time",
        type=int,
        default=0,
        help="Genesis time of the network (unix seconds)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--no-color", action="store_true", help="Disable colored logging output")

    args = parser.parse_args()
    setup_logging("relay", args.verbose, args.no_color)

    config = RelayConfig(
        host=args.host,
        port=args.port,
        metrics_port=args.metrics_port,
        network_id=args.network_id,
        genesis_time=args.genesis_time,
    )
    try:
        asyncio.run(serve(config))
    except OSError as e:
        logger.error("Cannot serve on %s:%d: %s", args.host, args.port, e)
        sys.exit(1)


if __name__ == "__main__":
    main()
