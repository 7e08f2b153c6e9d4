"""CLI entry point for launching an overlay node.

Usage:
    overlay-node
    overlay-node --config node_config.json
    overlay-node --config node_config.json --port 6007
    overlay-node --relay 203.0.113.5:6006:12D3KooWRelay

Config file layout (all keys optional):
    {
      "host": "0.0.0.0", "port": 6006, "peer_id": "", "advertise_host": "",
      "topology": {
        "relay": {"address": "203.0.113.5", "port": 6006, "peerId": "..."},
        "protocols": {"ROLE": "...", "MULTIADDRES": "...", "PEER_LIST": "...", "PING": "..."},
        "reconcile_interval": 10
      }
    }
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from overlay_node.config import BootstrapRelay, NodeConfig
from overlay_node.network.http_transport import HttpTransport
from overlay_node.network.topology import TopologyService


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Launch an overlay node (peer directory + topology upkeep)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config", "-c",
        help="Path to JSON config file",
    )
    parser.add_argument(
        "--host",
        help="Override listening host",
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        help="Override listening port",
    )
    parser.add_argument(
        "--peer-id",
        help="Override local peer id (random if unset)",
    )
    parser.add_argument(
        "--relay",
        help="Bootstrap relay as HOST:PORT:PEER_ID",
    )
    parser.add_argument(
        "--log-level", "-l",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    return parser.parse_args(argv)


def parse_relay(spec: str) -> BootstrapRelay:
    """Parse ``HOST:PORT:PEER_ID`` into a BootstrapRelay."""
    parts = spec.split(":")
    if len(parts) != 3 or not parts[0] or not parts[2]:
        raise ValueError(f"relay must be HOST:PORT:PEER_ID, got {spec!r}")
    try:
        port = int(parts[1])
    except ValueError as e:
        raise ValueError(f"invalid relay port in {spec!r}") from e
    return BootstrapRelay(address=parts[0], port=port, peer_id=parts[2])


def load_config(config_path: str | None, overrides: dict[str, Any]) -> NodeConfig:
    """Load node configuration from JSON and apply CLI overrides."""
    raw: dict[str, Any] = {}
    if config_path:
        path = Path(config_path).resolve()
        if not path.exists():
            print(f"Error: config file not found: {path}", file=sys.stderr)
            sys.exit(1)
        with open(path) as f:
            raw = json.load(f)

    config = NodeConfig.from_dict(raw)

    # Apply CLI overrides
    if overrides.get("host"):
        config.host = overrides["host"]
    if overrides.get("port"):
        config.port = overrides["port"]
    if overrides.get("peer_id"):
        config.peer_id = overrides["peer_id"]
    if overrides.get("relay"):
        config.topology.bootstrap = overrides["relay"]

    return config


async def run_node(config: NodeConfig) -> None:
    """Start the transport and topology service and run until interrupted."""
    transport = HttpTransport(
        host=config.host,
        port=config.port,
        peer_id=config.peer_id,
        advertise_host=config.advertise_host,
        ping_protocol=config.topology.protocols.ping,
    )
    service = TopologyService(transport, config.topology)

    await transport.start()
    await service.start()

    # Handle graceful shutdown
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def handle_signal() -> None:
        print("\nShutting down...")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    await stop_event.wait()
    await service.stop()
    await transport.stop()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    # Setup logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    overrides: dict[str, Any] = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if args.peer_id:
        overrides["peer_id"] = args.peer_id
    if args.relay:
        try:
            overrides["relay"] = parse_relay(args.relay)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(2)

    config = load_config(args.config, overrides)

    print("=" * 60)
    print("  Overlay Node")
    print("=" * 60)
    print(f"  Listening: {config.host}:{config.port}")
    bootstrap = config.topology.bootstrap
    print(f"  Bootstrap relay: {bootstrap.multiaddr if bootstrap else 'none'}")
    print(f"  Roles: {', '.join(config.topology.local_roles)}")
    print(f"  Reconcile interval: {config.topology.reconcile_interval}s")
    print("=" * 60 + "\n")

    asyncio.run(run_node(config))


if __name__ == "__main__":
    main()
