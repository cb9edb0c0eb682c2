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
"""Core data model: identities, destinations, policies and decisions.

Every entity here is immutable. Destinations and Policies are validated
at construction time so a malformed entry can never reach the live
configuration; Decisions are created per connection and discarded.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from .errors import ConfigurationError


class Verdict(str, Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"


class PolicyAction(str, Enum):
    """Only ALLOW exists. DENY is the absence of a matching ALLOW."""

    ALLOW = "ALLOW"


class ReasonCode(str, Enum):
    """Machine-readable explanation attached to every Decision."""

    MATCHED = "matched"
    NO_IDENTITY = "no_identity"
    NO_DESTINATION = "no_destination"
    UNBOUND_DESTINATION = "unbound_destination"
    NO_MATCHING_POLICY = "no_matching_policy"
    ABANDONED = "abandoned"
    INTERNAL_ERROR = "internal_error"


def normalize_host(host: str) -> str:
    """Lower-case a hostname and drop a trailing root dot."""
    return host.strip().lower().rstrip(".")


def _check_port(value: Any, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 65535:
        raise ConfigurationError(f"{what}: invalid port {value!r} (expected 1-65535)")
    return value


def _check_id(value: Any, what: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"{what}: id must be a non-empty string")
    return value.strip()


def _check_names(values: Any, what: str) -> list[str]:
    if not isinstance(values, (list, tuple, set, frozenset)):
        raise ConfigurationError(f"{what} must be a list, got {values!r}")
    names = []
    for value in values:
        if not isinstance(value, str) or not value.strip():
            raise ConfigurationError(f"{what}: invalid entry {value!r} (expected a non-empty string)")
        names.append(value.strip())
    return names


@dataclass(frozen=True)
class SourceIdentity:
    """Canonical identity of the calling workload."""

    namespace: str
    service_account: str | None = None
    trust_domain: str | None = None

    def __str__(self) -> str:
        if self.service_account:
            return f"{self.namespace}/{self.service_account}"
        return self.namespace


@dataclass(frozen=True)
class ConnectionMetadata:
    """One captured connection attempt, as handed over by the capture layer."""

    requested_host: str
    requested_port: int
    peer_identity: str | None = None
    identity_verified: bool = False
    client_address: str = ""
    connection_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])


@dataclass(frozen=True)
class Destination:
    """An externally reachable service: a host set on a single port.

    ``gateway_binding`` names the forwarding path; ``None`` means the
    destination is not reachable through the controlled path at all.
    ``address`` is the real upstream address used when forwarding;
    when unset the requested host is dialled as-is.
    """

    id: str
    hosts: frozenset[str]
    port: int
    gateway_binding: str | None = None
    address: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _check_id(self.id, "destination"))
        hosts = frozenset(
            normalize_host(h) for h in _check_names(self.hosts, f"destination {self.id}: hosts")
        )
        if not hosts:
            raise ConfigurationError(f"destination {self.id}: at least one host is required")
        object.__setattr__(self, "hosts", hosts)
        _check_port(self.port, f"destination {self.id}")
        if self.gateway_binding is not None and not str(self.gateway_binding).strip():
            object.__setattr__(self, "gateway_binding", None)

    def bindings(self) -> Iterable[tuple[str, int]]:
        """The host:port pairs this destination claims."""
        return ((host, self.port) for host in sorted(self.hosts))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "hosts": sorted(self.hosts),
            "port": self.port,
            "gateway": self.gateway_binding,
            "address": self.address,
        }


@dataclass(frozen=True)
class Policy:
    """An additive ALLOW rule scoped to exactly one destination."""

    id: str
    target_destination_id: str
    source_namespaces: frozenset[str]
    allowed_ports: frozenset[int]
    action: PolicyAction = PolicyAction.ALLOW

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _check_id(self.id, "policy"))
        object.__setattr__(
            self,
            "target_destination_id",
            _check_id(self.target_destination_id, f"policy {self.id} target"),
        )
        namespaces = _check_names(self.source_namespaces, f"policy {self.id}: namespaces")
        object.__setattr__(self, "source_namespaces", frozenset(namespaces))
        ports = frozenset(_check_port(p, f"policy {self.id}") for p in self.allowed_ports)
        if not ports:
            raise ConfigurationError(f"policy {self.id}: at least one allowed port is required")
        object.__setattr__(self, "allowed_ports", ports)
        try:
            object.__setattr__(self, "action", PolicyAction(self.action))
        except ValueError:
            raise ConfigurationError(
                f"policy {self.id}: unsupported action {self.action!r} (only ALLOW)"
            ) from None

    def matches(self, namespace: str, port: int) -> bool:
        # An empty namespace set matches nothing.
        return namespace in self.source_namespaces and port in self.allowed_ports

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "destination": self.target_destination_id,
            "action": self.action.value,
            "namespaces": sorted(self.source_namespaces),
            "ports": sorted(self.allowed_ports),
        }


@dataclass(frozen=True)
class Decision:
    """The verdict for one connection attempt."""

    verdict: Verdict
    reason_code: ReasonCode
    destination_id: str | None = None
    matched_policy_id: str | None = None
    source_namespace: str | None = None
    upstream_host: str | None = None  # address to dial, ALLOW only

    @property
    def allowed(self) -> bool:
        return self.verdict is Verdict.ALLOW

    @classmethod
    def allow(
        cls,
        destination_id: str,
        policy_id: str,
        namespace: str,
        upstream_host: str,
    ) -> Decision:
        return cls(
            verdict=Verdict.ALLOW,
            reason_code=ReasonCode.MATCHED,
            destination_id=destination_id,
            matched_policy_id=policy_id,
            source_namespace=namespace,
            upstream_host=upstream_host,
        )

    @classmethod
    def deny(
        cls,
        reason: ReasonCode,
        destination_id: str | None = None,
        namespace: str | None = None,
    ) -> Decision:
        return cls(
            verdict=Verdict.DENY,
            reason_code=reason,
            destination_id=destination_id,
            source_namespace=namespace,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "reason_code": self.reason_code.value,
            "destination_id": self.destination_id,
            "matched_policy_id": self.matched_policy_id,
            "source_namespace": self.source_namespace,
            "upstream_host": self.upstream_host,
        }
