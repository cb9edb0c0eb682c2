"""Pytest configuration for egress-waypoint tests."""

import sys
from pathlib import Path

import pytest

# Ensure src/egress_waypoint is importable
src_path = str(Path(__file__).parent.parent / "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from egress_waypoint.audit import AuditEmitter  # noqa: E402
from egress_waypoint.engine import DecisionEngine  # noqa: E402
from egress_waypoint.identity import IdentityResolver  # noqa: E402
from egress_waypoint.models import Destination, Policy  # noqa: E402
from egress_waypoint.policy_store import PolicyStore  # noqa: E402
from egress_waypoint.registry import DestinationRegistry  # noqa: E402
from egress_waypoint.state import ConfigState  # noqa: E402


@pytest.fixture
def state():
    return ConfigState()


@pytest.fixture
def registry(state):
    return DestinationRegistry(state)


@pytest.fixture
def store(state):
    return PolicyStore(state)


@pytest.fixture
def engine(state):
    return DecisionEngine(state, IdentityResolver("cluster.local"), AuditEmitter(), gateway="waypoint")


@pytest.fixture
def pg1():
    return Destination(id="pg1", hosts=frozenset({"203.0.113.10"}), port=5432, gateway_binding="waypoint")


@pytest.fixture
def p1():
    return Policy(
        id="p1",
        target_destination_id="pg1",
        source_namespaces=frozenset({"ns-a"}),
        allowed_ports=frozenset({5432}),
    )
