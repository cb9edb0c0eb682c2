# Egress Waypoint
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for the waypoint server: tunnelling, resets and reloads."""

import socket
import socketserver
import threading

import pytest
import yaml

from egress_waypoint.config import WaypointConfig
from egress_waypoint.errors import ConfigurationError
from egress_waypoint.models import Destination, Policy
from egress_waypoint.waypoint import WaypointServer, parse_connect_target

ALLOWED_NS = "spiffe://cluster.local/ns/rds-demo-1/sa/default"
DENIED_NS = "spiffe://cluster.local/ns/rds-demo-2/sa/default"


def _find_free_port() -> int:
    """Find an available TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class _EchoHandler(socketserver.BaseRequestHandler):
    def handle(self):
        while True:
            data = self.request.recv(4096)
            if not data:
                return
            self.request.sendall(data)


@pytest.fixture
def echo_server():
    server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), _EchoHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server.server_address[1]
    server.shutdown()
    server.server_close()


def _config(tmp_path, upstream_port, **overrides):
    values = dict(
        listen_host="127.0.0.1",
        listen_port=0,
        audit_log_path=str(tmp_path / "audit.log"),
        destinations=[
            Destination(
                id="postgres-1",
                hosts=frozenset({"postgres-1.test"}),
                port=upstream_port,
                gateway_binding="waypoint",
                address="127.0.0.1",
            )
        ],
        policies=[
            Policy(
                id="rds-demo-1",
                target_destination_id="postgres-1",
                source_namespaces=frozenset({"rds-demo-1"}),
                allowed_ports=frozenset({upstream_port}),
            )
        ],
    )
    values.update(overrides)
    return WaypointConfig(**values)


@pytest.fixture
def waypoint(tmp_path, echo_server):
    server = WaypointServer(config=_config(tmp_path, echo_server))
    server.start()
    yield server
    server.stop()


def _connect(port, target, identity):
    sock = socket.create_connection(("127.0.0.1", port), timeout=5)
    request = f"CONNECT {target} HTTP/1.1\r\nHost: {target}\r\n"
    if identity:
        request += f"X-Peer-Identity: {identity}\r\n"
    sock.sendall((request + "\r\n").encode())
    return sock


def _read_head(sock) -> bytes:
    data = b""
    while b"\r\n\r\n" not in data:
        chunk = sock.recv(1024)
        if not chunk:
            break
        data += chunk
    return data


def _read_or_reset(sock) -> bytes:
    try:
        return sock.recv(1024)
    except ConnectionResetError:
        return b""


class TestTunnel:

    def test_allowed_connection_is_relayed(self, waypoint, echo_server):
        with _connect(waypoint.port, f"postgres-1.test:{echo_server}", ALLOWED_NS) as sock:
            head = _read_head(sock)
            assert head.startswith(b"HTTP/1.1 200")
            sock.sendall(b"ping")
            assert sock.recv(1024) == b"ping"

        entry = waypoint.audit.read_recent(1)[0]
        assert entry.event_type == "allowed"
        assert entry.source_namespace == "rds-demo-1"
        assert entry.upstream == f"127.0.0.1:{echo_server}"

    def test_other_namespace_is_reset(self, waypoint, echo_server):
        with _connect(waypoint.port, f"postgres-1.test:{echo_server}", DENIED_NS) as sock:
            assert _read_or_reset(sock) == b""

        entry = waypoint.audit.read_recent(1)[0]
        assert entry.event_type == "denied"
        assert entry.reason_code == "no_matching_policy"
        assert entry.upstream == ""

    def test_unregistered_destination_is_reset(self, waypoint, echo_server):
        with _connect(waypoint.port, f"198.51.100.20:{echo_server}", ALLOWED_NS) as sock:
            assert _read_or_reset(sock) == b""
        assert waypoint.audit.read_recent(1)[0].reason_code == "no_destination"

    def test_missing_identity_is_reset(self, waypoint, echo_server):
        with _connect(waypoint.port, f"postgres-1.test:{echo_server}", None) as sock:
            assert _read_or_reset(sock) == b""
        assert waypoint.audit.read_recent(1)[0].reason_code == "no_identity"

    def test_identity_from_untrusted_address_ignored(self, tmp_path, echo_server):
        config = _config(tmp_path, echo_server, trusted_capture_addresses=["10.255.0.1"])
        server = WaypointServer(config=config)
        server.start()
        try:
            with _connect(server.port, f"postgres-1.test:{echo_server}", ALLOWED_NS) as sock:
                assert _read_or_reset(sock) == b""
            assert server.audit.read_recent(1)[0].reason_code == "no_identity"
        finally:
            server.stop()

    def test_unreachable_upstream_is_502(self, tmp_path):
        dead_port = _find_free_port()
        server = WaypointServer(config=_config(tmp_path, dead_port))
        server.start()
        try:
            with _connect(server.port, f"postgres-1.test:{dead_port}", ALLOWED_NS) as sock:
                assert _read_head(sock).startswith(b"HTTP/1.1 502")
        finally:
            server.stop()

    def test_bad_target_is_400(self, waypoint):
        with _connect(waypoint.port, "no-port-here", ALLOWED_NS) as sock:
            assert _read_head(sock).startswith(b"HTTP/1.1 400")
        assert waypoint.audit.entry_count == 0


class TestWaypointServer:

    def test_start_and_stop(self, tmp_path, echo_server):
        server = WaypointServer(config=_config(tmp_path, echo_server))
        assert server.is_running is False
        server.start()
        assert server.is_running is True
        server.start()  # second start only warns
        server.stop()
        assert server.is_running is False

    def test_get_status(self, waypoint):
        status = waypoint.get_status()
        assert status["running"] is True
        assert status["gateway"] == "waypoint"
        assert status["destinations"] == 1
        assert status["policies"] == 1
        assert status["port"] == waypoint.port

    def test_reload_config(self, tmp_path, echo_server):
        path = tmp_path / "waypoint.yaml"
        path.write_text(yaml.dump({"destinations": [], "policies": []}))
        server = WaypointServer(config=_config(tmp_path, echo_server), config_path=str(path))
        version = server.state.version
        server.reload_config()
        assert len(server.registry) == 0
        assert len(server.policies) == 0
        assert server.state.version == version + 1

    def test_bad_reload_keeps_live_config(self, tmp_path, echo_server):
        path = tmp_path / "waypoint.yaml"
        path.write_text(yaml.dump({"destinations": [{"id": "broken", "hosts": [], "port": 1}]}))
        server = WaypointServer(config=_config(tmp_path, echo_server), config_path=str(path))
        with pytest.raises(ConfigurationError):
            server.reload_config()
        assert server.registry.get("postgres-1") is not None

    def test_current_config_reflects_live_changes(self, tmp_path, echo_server):
        server = WaypointServer(config=_config(tmp_path, echo_server))
        server.policies.remove("rds-demo-1")
        assert server.current_config().policies == []
        assert [d.id for d in server.current_config().destinations] == ["postgres-1"]


@pytest.mark.parametrize(
    "target,expected",
    [
        ("db.example.com:5432", ("db.example.com", 5432)),
        ("10.0.0.1:5432", ("10.0.0.1", 5432)),
        ("[::1]:5432", ("::1", 5432)),
        ("db.example.com", ("", 0)),
        ("db.example.com:http", ("", 0)),
        (":5432", ("", 0)),
        ("db:70000", ("", 0)),
    ],
)
def test_parse_connect_target(target, expected):
    assert parse_connect_target(target) == expected
