"""Command line entry point: run a master or a worker node.

Usage:
    supercluster-node worker                       # worker on the default port
    supercluster-node master --port 44402
    supercluster-node worker --config cluster.yaml --log-level debug
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from typing import Optional

import structlog

from supercluster.cluster.master import Master
from supercluster.cluster.models import PeerInfo, Role, TaskResult
from supercluster.cluster.worker import Worker
from supercluster.config import ClusterConfig, load_config
from supercluster.log import configure_logging


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="SuperCluster node",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s worker\n"
            "  %(prog)s master --port 44402\n"
            "  %(prog)s worker --config config/supercluster.yaml --json-logs\n"
        ),
    )
    parser.add_argument("role", choices=[r.value for r in Role], help="Role of this node")
    parser.add_argument("--config", default=None, help="YAML config file")
    parser.add_argument("--port", type=int, default=None, help="REST API port override")
    parser.add_argument(
        "--advertise-address",
        default=None,
        help="Address peers should use to reach this node",
    )
    parser.add_argument("--log-level", default=None, help="debug, info, warning, error")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    return parser.parse_args(argv)


def apply_overrides(config: ClusterConfig, args: argparse.Namespace) -> ClusterConfig:
    node = config.master if args.role == Role.MASTER.value else config.worker
    if args.port is not None:
        node.rest_api_port = args.port
    if args.advertise_address:
        node.advertise_address = args.advertise_address
    if args.log_level:
        config.log_level = args.log_level
    return config


def build_node(config: ClusterConfig, role: str) -> Master | Worker:
    """Create the node for ``role`` and attach log-only event listeners."""
    logger = structlog.get_logger("supercluster.node")

    if role == Role.MASTER.value:
        node: Master | Worker = Master(config)
        peer_role = Role.WORKER
    else:
        node = Worker(config)
        peer_role = Role.MASTER

    def _available(name: str, peer: PeerInfo, reason: str) -> None:
        logger.info("peer_joined", name=name, peer_id=peer.id, reason=reason)

    def _unavailable(name: str, peer: PeerInfo, reason: str) -> None:
        logger.info("peer_left", name=name, peer_id=peer.id, reason=reason)

    node.on(f"{peer_role.value}_available", _available)
    node.on(f"{peer_role.value}_unavailable", _unavailable)

    if isinstance(node, Master):

        def _complete(result: TaskResult) -> None:
            logger.info(
                "task_result",
                task_id=result.task_id,
                success=result.success,
                error=result.error_message,
            )

        node.on("task_complete", _complete)
    return node


async def run(node: Master | Worker) -> None:
    """Start ``node`` and serve until SIGINT/SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    await node.start()
    try:
        await stop.wait()
    finally:
        await node.stop()


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    config = apply_overrides(load_config(args.config), args)
    configure_logging(config.log_level, json_output=args.json_logs)
    logger = structlog.get_logger(__name__)

    node = build_node(config, args.role)
    logger.info("starting_node", role=args.role, peer_id=node.peer.id)
    try:
        asyncio.run(run(node))
    except KeyboardInterrupt:
        logger.info("node_shutdown", reason="User interrupt")
    except OSError as e:
        logger.error("node_fatal_error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
