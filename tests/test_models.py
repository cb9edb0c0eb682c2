# Egress Waypoint
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""Tests for the core data model and its validation."""

import pytest

from egress_waypoint.errors import ConfigurationError
from egress_waypoint.models import (
    Decision,
    Destination,
    Policy,
    PolicyAction,
    ReasonCode,
    SourceIdentity,
    Verdict,
    normalize_host,
)


class TestDestination:
    """Tests for Destination construction."""

    def test_hosts_are_normalized(self):
        dest = Destination(id="db", hosts=["DB.Example.COM.", " 10.0.0.1 "], port=5432)
        assert dest.hosts == frozenset({"db.example.com", "10.0.0.1"})

    def test_requires_a_host(self):
        with pytest.raises(ConfigurationError):
            Destination(id="db", hosts=[], port=5432)

    def test_rejects_bare_string_hosts(self):
        with pytest.raises(ConfigurationError):
            Destination(id="db", hosts="db.example.com", port=5432)

    @pytest.mark.parametrize("hosts", [["db.example", 1234], ["db.example", ""], ["db", None], 5])
    def test_rejects_malformed_hosts(self, hosts):
        with pytest.raises(ConfigurationError):
            Destination(id="db", hosts=hosts, port=5432)

    @pytest.mark.parametrize("port", [0, 65536, -1, "5432", True, None])
    def test_rejects_invalid_port(self, port):
        with pytest.raises(ConfigurationError):
            Destination(id="db", hosts=["db"], port=port)

    def test_rejects_empty_id(self):
        with pytest.raises(ConfigurationError):
            Destination(id="  ", hosts=["db"], port=5432)

    def test_blank_gateway_means_unbound(self):
        dest = Destination(id="db", hosts=["db"], port=5432, gateway_binding="  ")
        assert dest.gateway_binding is None

    def test_bindings(self):
        dest = Destination(id="db", hosts=["b", "a"], port=5432)
        assert list(dest.bindings()) == [("a", 5432), ("b", 5432)]

    def test_equal_destinations_compare_equal(self):
        a = Destination(id="db", hosts=["x", "y"], port=5432, gateway_binding="waypoint")
        b = Destination(id="db", hosts=["y", "X"], port=5432, gateway_binding="waypoint")
        assert a == b


class TestPolicy:
    """Tests for Policy construction and matching."""

    def test_matches_namespace_and_port(self, p1):
        assert p1.matches("ns-a", 5432) is True
        assert p1.matches("ns-b", 5432) is False
        assert p1.matches("ns-a", 5433) is False

    def test_empty_namespaces_match_nothing(self):
        policy = Policy(
            id="p", target_destination_id="d", source_namespaces=[], allowed_ports=[5432]
        )
        assert policy.source_namespaces == frozenset()
        assert policy.matches("", 5432) is False
        assert policy.matches("ns-a", 5432) is False

    @pytest.mark.parametrize(
        "namespaces", [["ns-a", False], ["ns-a", "  "], ["ns-a", 7], "ns-a"]
    )
    def test_rejects_malformed_namespaces(self, namespaces):
        with pytest.raises(ConfigurationError):
            Policy(
                id="p",
                target_destination_id="d",
                source_namespaces=namespaces,
                allowed_ports=[5432],
            )

    def test_requires_ports(self):
        with pytest.raises(ConfigurationError):
            Policy(id="p", target_destination_id="d", source_namespaces=["ns"], allowed_ports=[])

    def test_rejects_deny_action(self):
        with pytest.raises(ConfigurationError):
            Policy(
                id="p",
                target_destination_id="d",
                source_namespaces=["ns"],
                allowed_ports=[5432],
                action="DENY",
            )

    def test_action_string_is_coerced(self):
        policy = Policy(
            id="p",
            target_destination_id="d",
            source_namespaces=["ns"],
            allowed_ports=[5432],
            action="ALLOW",
        )
        assert policy.action is PolicyAction.ALLOW

    def test_requires_target(self):
        with pytest.raises(ConfigurationError):
            Policy(id="p", target_destination_id="", source_namespaces=["ns"], allowed_ports=[1])


class TestDecision:
    def test_allow_carries_policy(self):
        d = Decision.allow("pg1", "p1", "ns-a", "203.0.113.10")
        assert d.allowed is True
        assert d.verdict is Verdict.ALLOW
        assert d.reason_code is ReasonCode.MATCHED
        assert d.matched_policy_id == "p1"

    def test_deny_has_no_policy(self):
        d = Decision.deny(ReasonCode.NO_MATCHING_POLICY, "pg1", "ns-b")
        assert d.allowed is False
        assert d.matched_policy_id is None
        assert d.upstream_host is None

    def test_to_dict(self):
        data = Decision.deny(ReasonCode.NO_DESTINATION).to_dict()
        assert data["verdict"] == "DENY"
        assert data["reason_code"] == "no_destination"


def test_source_identity_str():
    assert str(SourceIdentity("ns-a")) == "ns-a"
    assert str(SourceIdentity("ns-a", "default")) == "ns-a/default"


def test_normalize_host():
    assert normalize_host(" Example.COM. ") == "example.com"
