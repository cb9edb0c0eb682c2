# Egress Waypoint
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Egress Waypoint.
#
# Egress Waypoint is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Egress waypoint CLI entry point.

Usage:
    egress-waypoint [--config PATH] [--port PORT] [--audit-log PATH]
                    [--api-port PORT] [--check]

SIGHUP reloads destinations and policies from the config file.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys

from .config import load_config
from .errors import ConfigurationError, DestinationError
from .waypoint import WaypointServer

logger = logging.getLogger("egress_waypoint.server")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="egress-waypoint",
        description="Namespace-scoped egress waypoint",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to waypoint.yaml (default: ~/.egress-waypoint/waypoint.yaml)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Listen port (overrides config, default: 15008)",
    )
    parser.add_argument(
        "--audit-log",
        default=None,
        help="Path for audit log file (overrides config)",
    )
    parser.add_argument(
        "--api-port",
        type=int,
        default=None,
        help="Serve the management API on this port",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Validate the configuration and exit",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for the waypoint server."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        config = load_config(args.config)
        if args.port is not None:
            config.listen_port = args.port
        if args.audit_log is not None:
            config.audit_log_path = args.audit_log
        server = WaypointServer(config=config, config_path=args.config)
    except (ConfigurationError, DestinationError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    if args.check:
        print(
            f"OK: {len(server.registry)} destination(s), {len(server.policies)} policy(ies), "
            f"gateway={config.gateway}"
        )
        return 0

    def _shutdown(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        server.stop()
        sys.exit(0)

    def _reload(signum, frame):
        try:
            server.reload_config()
        except (ConfigurationError, DestinationError) as exc:
            logger.error("Reload rejected, keeping current configuration: %s", exc)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _reload)

    logger.info("=" * 60)
    logger.info("Egress Waypoint -- gateway %s", config.gateway)
    logger.info("=" * 60)
    logger.info("  Listen: %s:%d", config.listen_host, config.listen_port)
    logger.info("  Trust domain: %s", config.trust_domain or "<any>")
    logger.info("  Destinations: %d", len(server.registry))
    logger.info("  Policies: %d", len(server.policies))
    logger.info("  Audit log: %s", config.audit_log_path)
    logger.info("=" * 60)

    server.start()

    if args.api_port is not None:
        import uvicorn

        from .api import create_app

        uvicorn.run(create_app(server), host="127.0.0.1", port=args.api_port, log_level="warning")
        server.stop()
        return 0

    # Block main thread until interrupted
    try:
        signal.pause()
    except AttributeError:
        # signal.pause() not available on Windows -- use a loop
        import time

        while server.is_running:
            time.sleep(1)
    return 0


if __name__ == "__main__":
    sys.exit(main())
