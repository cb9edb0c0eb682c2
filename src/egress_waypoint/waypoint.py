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
"""Egress waypoint server -- the single forwarding path for external DBs.

Captured workload connections arrive as HTTP CONNECT tunnels (the shape
HBONE uses). The capture layer in front of the waypoint has already
authenticated the peer and passes its identity in ``X-Peer-Identity``;
that header is only trusted from the configured capture addresses.

Architecture:
  Workload --capture--> Waypoint (CONNECT host:port) --> External service

Per connection:
  ALLOW  -> dial the destination's real address, answer 200, relay bytes
  DENY   -> reset the client connection (RST, no response), so policy
            denial is distinguishable from a timeout
  upstream unreachable after ALLOW -> 502
"""

from __future__ import annotations

import http.server
import logging
import select
import socket
import socketserver
import struct
import threading
from typing import Any

from .audit import AuditEmitter
from .config import WaypointConfig, load_config
from .engine import DecisionEngine
from .identity import IdentityResolver
from .models import ConnectionMetadata, Decision
from .policy_store import PolicyStore
from .registry import DestinationRegistry
from .state import ConfigState

logger = logging.getLogger("egress_waypoint.waypoint")

IDENTITY_HEADER = "X-Peer-Identity"

# Buffer size for tunnel relay
_TUNNEL_BUFSIZE = 65536

# Timeout for upstream connections (seconds)
_UPSTREAM_TIMEOUT = 10

# Tunnel idle timeout (seconds)
_TUNNEL_IDLE_TIMEOUT = 300


class WaypointHandler(http.server.BaseHTTPRequestHandler):
    """CONNECT handler enforcing the decision engine's verdict."""

    server: _WaypointTCPServer

    # Unbuffered so no tunnel bytes are stranded in the request reader
    rbufsize = 0
    protocol_version = "HTTP/1.1"

    def do_CONNECT(self) -> None:
        host, port = parse_connect_target(self.path)
        if not host:
            self._send_error(400, "Bad CONNECT target")
            return

        waypoint = self.server.waypoint
        client_ip = self.client_address[0] if self.client_address else ""
        metadata = ConnectionMetadata(
            requested_host=host,
            requested_port=port,
            peer_identity=self.headers.get(IDENTITY_HEADER),
            identity_verified=waypoint.is_trusted_peer(client_ip),
            client_address=client_ip,
        )

        decision = waypoint.engine.evaluate(metadata, aborted=lambda: _peer_gone(self.connection))
        if not decision.allowed:
            self._reset()
            return

        self._forward(decision, metadata)

    def _forward(self, decision: Decision, metadata: ConnectionMetadata) -> None:
        upstream_host = decision.upstream_host or metadata.requested_host
        try:
            upstream = socket.create_connection(
                (upstream_host, metadata.requested_port), timeout=_UPSTREAM_TIMEOUT
            )
        except OSError as exc:
            logger.error(
                "Failed to connect to %s:%d for %s -- %s",
                upstream_host,
                metadata.requested_port,
                decision.destination_id,
                exc,
            )
            self._send_error(502, f"Cannot reach {metadata.requested_host}:{metadata.requested_port}")
            return

        try:
            self.send_response(200, "Connection Established")
            self.end_headers()
            self._tunnel(self.connection, upstream)
        finally:
            upstream.close()
            self.close_connection = True

    def _tunnel(self, client_conn: socket.socket, upstream_conn: socket.socket) -> None:
        """Relay data between client and upstream until either side closes."""
        conns = [client_conn, upstream_conn]
        while True:
            try:
                readable, _, errors = select.select(conns, [], conns, _TUNNEL_IDLE_TIMEOUT)
            except (OSError, ValueError):
                return
            if errors or not readable:
                return
            for sock in readable:
                other = upstream_conn if sock is client_conn else client_conn
                try:
                    data = sock.recv(_TUNNEL_BUFSIZE)
                    if not data:
                        return
                    other.sendall(data)
                except OSError:
                    return

    def _reset(self) -> None:
        """Abort the client connection with a TCP RST."""
        self.close_connection = True
        try:
            self.connection.setsockopt(
                socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0)
            )
        except OSError:
            pass
        self.connection.close()

    def _send_error(self, code: int, message: str) -> None:
        body = f"egress waypoint: {message}\n".encode()
        self.close_connection = True
        try:
            self.send_response(code)
            self.send_header("Content-Type", "text/plain; charset=utf-8")
            self.send_header("Content-Length", str(len(body)))
            self.send_header("Connection", "close")
            self.end_headers()
            self.wfile.write(body)
        except OSError as exc:
            logger.debug("Could not send %d to client: %s", code, exc)

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use our logger instead of stderr."""
        logger.debug("Waypoint: %s", format % args)


class _WaypointTCPServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, address: tuple[str, int], waypoint: WaypointServer) -> None:
        self.waypoint = waypoint
        super().__init__(address, WaypointHandler)


def parse_connect_target(target: str) -> tuple[str, int]:
    """Parse host:port from a CONNECT request line. Returns ("", 0) if invalid."""
    target = target.strip()
    try:
        if target.startswith("["):
            host, _, rest = target[1:].partition("]")
            port = int(rest.lstrip(":")) if rest else 0
        else:
            host, _, port_str = target.rpartition(":")
            port = int(port_str)
    except ValueError:
        return "", 0
    if not host or not 1 <= port <= 65535:
        return "", 0
    return host, port


def _peer_gone(sock: socket.socket) -> bool:
    """True if the client has already closed its side of the connection."""
    try:
        readable, _, _ = select.select([sock], [], [], 0)
        if not readable:
            return False
        return sock.recv(1, socket.MSG_PEEK) == b""
    except (OSError, ValueError):
        return True


class WaypointServer:
    """Composition root: configuration state, engine, audit and listener.

    Usage:
        server = WaypointServer(config_path="waypoint.yaml")
        server.start()
        ...
        server.stop()
    """

    def __init__(
        self,
        config: WaypointConfig | None = None,
        config_path: str | None = None,
    ) -> None:
        self._config_path = config_path
        self._config = config or load_config(config_path)
        self._trusted = frozenset(self._config.trusted_capture_addresses)

        self._state = ConfigState()
        self._state.replace_all(self._config.destinations, self._config.policies)
        self._registry = DestinationRegistry(self._state)
        self._policies = PolicyStore(self._state)
        self._audit = AuditEmitter(self._config.audit_log_path)
        self._engine = DecisionEngine(
            self._state,
            resolver=IdentityResolver(self._config.trust_domain),
            audit=self._audit,
            gateway=self._config.gateway,
        )

        self._tcp: _WaypointTCPServer | None = None
        self._thread: threading.Thread | None = None
        self._running = False

    @property
    def config(self) -> WaypointConfig:
        return self._config

    @property
    def config_path(self) -> str | None:
        return self._config_path

    @property
    def state(self) -> ConfigState:
        return self._state

    @property
    def registry(self) -> DestinationRegistry:
        return self._registry

    @property
    def policies(self) -> PolicyStore:
        return self._policies

    @property
    def engine(self) -> DecisionEngine:
        return self._engine

    @property
    def audit(self) -> AuditEmitter:
        return self._audit

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def port(self) -> int:
        """The bound listen port (differs from config when it asked for 0)."""
        if self._tcp is not None:
            return self._tcp.server_address[1]
        return self._config.listen_port

    def is_trusted_peer(self, client_ip: str) -> bool:
        return client_ip in self._trusted

    def start(self) -> None:
        """Start the waypoint listener in a background thread."""
        if self._running:
            logger.warning("Waypoint already running")
            return

        self._tcp = _WaypointTCPServer((self._config.listen_host, self._config.listen_port), self)
        self._thread = threading.Thread(target=self._serve, name="egress-waypoint", daemon=True)
        self._running = True
        self._thread.start()

        logger.info(
            "Waypoint %s listening on %s:%d (%d destination(s), %d policy(ies))",
            self._config.gateway,
            self._config.listen_host,
            self.port,
            len(self._registry),
            len(self._policies),
        )

    def stop(self) -> None:
        self._running = False
        if self._tcp:
            self._tcp.shutdown()
            self._tcp.server_close()
            self._tcp = None
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        self._audit.close()
        logger.info("Waypoint stopped")

    def reload_config(self, config_path: str | None = None) -> None:
        """Reload destinations and policies from disk in one atomic swap.

        Listener, gateway and trust-domain settings take effect on restart.
        A malformed file raises ConfigurationError and leaves the live
        configuration untouched.
        """
        path = config_path or self._config_path
        new_config = load_config(path)
        self._state.replace_all(new_config.destinations, new_config.policies)
        self._trusted = frozenset(new_config.trusted_capture_addresses)
        self._config.destinations = list(new_config.destinations)
        self._config.policies = list(new_config.policies)
        self._config.trusted_capture_addresses = list(new_config.trusted_capture_addresses)
        logger.info("Waypoint config reloaded (version %d)", self._state.version)

    def current_config(self) -> WaypointConfig:
        """The startup settings combined with the live destinations and policies."""
        return WaypointConfig(
            gateway=self._config.gateway,
            trust_domain=self._config.trust_domain,
            listen_host=self._config.listen_host,
            listen_port=self._config.listen_port,
            trusted_capture_addresses=sorted(self._trusted),
            audit_log_path=self._config.audit_log_path,
            destinations=self._registry.list(),
            policies=self._policies.list(),
        )

    def _serve(self) -> None:
        try:
            self._tcp.serve_forever()
        except Exception as exc:
            if self._running:
                logger.error("Waypoint crashed: %s", exc)
            self._running = False

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "gateway": self._config.gateway,
            "host": self._config.listen_host,
            "port": self.port,
            "trust_domain": self._config.trust_domain,
            "config_version": self._state.version,
            "destinations": len(self._registry),
            "policies": len(self._policies),
            "audit_entries": self._audit.entry_count,
            "audit_failures": self._audit.failed_count,
            "audit_stats": self._audit.get_stats(),
        }
