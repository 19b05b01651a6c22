"""
Local test network CLI entry point.

Boot an ephemeral execution/consensus network on this host, inspect it and tear it down.

Usage::

    local-testnet start genesis.json                 # standard mode
    local-testnet start genesis.json -p              # blinded blocks through a builder relay
    local-testnet start genesis.json --foreground    # supervise until Ctrl-C, then stop
    local-testnet dump-logs --tail 100
    local-testnet stop
    local-testnet clean

Global options:
    --data-dir      Directory holding run state (default: $LOCAL_TESTNET_DIR or ~/.local-testnet)
    --config        YAML settings file with UPPERCASE keys
    -v, --verbose   Enable debug logging
    --no-color      Disable colored logging output

Exit codes: 0 on success, 1 on failure, 2 on an unusable configuration, 130 on interrupt.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

import yaml
from pydantic import ValidationError

from local_testnet.config import DATA_DIR, TestnetSettings
from local_testnet.console import setup_logging
from local_testnet.exceptions import StartFailed, TeardownFailed, TestnetError
from local_testnet.lifecycle import LifecycleController
from local_testnet.topology import NodeCounts
from local_testnet.types import NetworkMode

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


async def cmd_start(controller: LifecycleController, args: argparse.Namespace) -> int:
    """Start a network; with --foreground, supervise it until interrupted."""
    mode = NetworkMode.BLINDED if args.blinded else NetworkMode.STANDARD

    counts = None
    if args.nodes is not None or args.relays is not None:
        pairs = args.nodes if args.nodes is not None else controller.settings.node_count
        relays = args.relays if args.relays is not None else controller.settings.relay_count
        counts = NodeCounts(execution=pairs, consensus=pairs, builder_relay=relays)

    try:
        topology = await controller.start(args.genesis, mode, counts)
    except StartFailed as e:
        cause = e.cause
        logger.error(
            "Node %s (%s) failed: %s", cause.node_id, cause.role.value, cause.outcome
        )
        for problem in e.rollback_failures:
            logger.error("Rollback problem: %s", problem)
        logger.error("Logs of the failed run: local-testnet dump-logs")
        return EXIT_FAILURE
    except TestnetError as e:
        logger.error("%s", e.message)
        return EXIT_FAILURE

    for spec in topology.nodes:
        node = controller.nodes[spec.node_id]
        logger.info("%-16s pid=%-7d %s", spec.node_id, node.pid, spec.rpc_url)

    if not args.foreground:
        return EXIT_OK

    try:
        failed = await controller.supervise()
    except asyncio.CancelledError:
        logger.info("Stopping testnet...")
        await stop_and_report(controller)
        raise

    if failed is not None:
        logger.error("%s died; stopping the testnet", failed.node_id)
        await stop_and_report(controller)
        return EXIT_FAILURE
    return EXIT_OK


async def stop_and_report(controller: LifecycleController) -> bool:
    """Stop the run, logging every teardown problem. Returns whether it stopped cleanly."""
    try:
        report = await controller.stop()
    except TeardownFailed as e:
        for failure in e.failures:
            logger.error("%s", failure)
        return False

    for node_id in report.force_killed:
        logger.warning("%s had to be force-killed", node_id)
    return True


async def cmd_stop(controller: LifecycleController, _args: argparse.Namespace) -> int:
    """Stop every node of the current run."""
    return EXIT_OK if await stop_and_report(controller) else EXIT_FAILURE


async def cmd_dump_logs(controller: LifecycleController, args: argparse.Namespace) -> int:
    """Print the per-node logs of a run."""
    try:
        logs = controller.dump_logs(args.run_id, args.tail)
    except TestnetError as e:
        logger.warning("%s", e.message)
        return EXIT_OK

    if not logs:
        logger.info("No node logs captured")
    for node_id, content in logs.items():
        sys.stdout.write(f"==> {node_id} <==\n{content}")
        if content and not content.endswith("\n"):
            sys.stdout.write("\n")
        sys.stdout.write("\n")
    sys.stdout.flush()
    return EXIT_OK


async def cmd_clean(controller: LifecycleController, _args: argparse.Namespace) -> int:
    """Stop leftovers and remove every artifact of the current run."""
    try:
        await controller.clean()
    except TeardownFailed as e:
        for failure in e.failures:
            logger.error("%s", failure)
        return EXIT_FAILURE
    return EXIT_OK


Command = Callable[[LifecycleController, argparse.Namespace], Awaitable[int]]

COMMANDS: dict[str, Command] = {
    "start": cmd_start,
    "stop": cmd_stop,
    "dump-logs": cmd_dump_logs,
    "clean": cmd_clean,
}


def non_negative_int(value: str) -> int:
    """Argument type for counts that may be zero but not negative."""
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be non-negative, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    """Argument parser with one subcommand per lifecycle operation."""
    parser = argparse.ArgumentParser(
        prog="local-testnet",
        description="Local multi-node test network orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=DATA_DIR,
        help=f"Directory holding run state (default: {DATA_DIR})",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML settings file",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored logging output",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Generate genesis and start the network")
    start.add_argument("genesis", type=Path, help="Execution genesis template (genesis.json)")
    start.add_argument(
        "-p",
        "--blinded",
        action="store_true",
        help="Produce blinded blocks through builder relays",
    )
    start.add_argument("--nodes", type=int, default=None, help="Execution/consensus node pairs")
    start.add_argument("--relays", type=int, default=None, help="Builder relays (blinded mode)")
    start.add_argument(
        "--foreground",
        action="store_true",
        help="Supervise the network until interrupted, then stop it",
    )

    sub.add_parser("stop", help="Stop every node of the current run")

    dump = sub.add_parser("dump-logs", help="Print the per-node logs")
    dump.add_argument(
        "--tail", type=non_negative_int, default=None, help="Only the last N lines per node"
    )
    dump.add_argument("--run-id", default=None, help="Run to read (default: the current run)")

    sub.add_parser("clean", help="Remove every artifact of the current run")

    return parser


def load_settings(path: Path | None) -> TestnetSettings:
    """
    Settings from a YAML file, or the defaults.

    Raises:
        OSError, yaml.YAMLError, pydantic.ValidationError: If the file is unusable.
    """
    if path is None:
        return TestnetSettings()
    return TestnetSettings.from_yaml_file(path)


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    setup_logging("testnet", args.verbose, args.no_color)

    try:
        settings = load_settings(args.config)
    except (OSError, yaml.YAMLError, ValidationError) as e:
        logger.error("Unusable configuration %s: %s", args.config, e)
        return EXIT_CONFIG

    controller = LifecycleController(settings=settings, data_dir=args.data_dir)

    # asyncio.run cancels the running command on Ctrl-C; start and
    # --foreground roll back before the interrupt propagates.
    try:
        return asyncio.run(COMMANDS[args.command](controller, args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
