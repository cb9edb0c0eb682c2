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
"""Copy-on-write configuration state shared by registry and policy store.

Destinations and policies live together in one immutable ConfigSnapshot.
Writers serialize on a lock, build a complete new snapshot and publish it
with a single reference assignment. Readers grab the current reference
and never lock, so an evaluation sees either the whole pre-update state
or the whole post-update state, never a mix.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Iterable, Mapping

from .errors import ConfigurationError, DestinationError, DestinationErrorKind
from .models import Destination, Policy

logger = logging.getLogger("egress_waypoint.state")


def _empty() -> Mapping:
    return MappingProxyType({})


@dataclass(frozen=True)
class ConfigSnapshot:
    """One consistent, read-only view of all destinations and policies."""

    version: int = 0
    destinations: Mapping[str, Destination] = field(default_factory=_empty)
    bindings: Mapping[tuple[str, int], str] = field(default_factory=_empty)
    policies: Mapping[str, Policy] = field(default_factory=_empty)

    @classmethod
    def build(
        cls,
        version: int,
        destinations: Mapping[str, Destination],
        policies: Mapping[str, Policy],
    ) -> ConfigSnapshot:
        """Build a snapshot, indexing host:port bindings and checking invariants."""
        bindings: dict[tuple[str, int], str] = {}
        for dest in destinations.values():
            for key in dest.bindings():
                owner = bindings.get(key)
                if owner is not None and owner != dest.id:
                    raise DestinationError(
                        DestinationErrorKind.CONFLICT,
                        f"{key[0]}:{key[1]} is already bound to destination {owner!r}",
                    )
                bindings[key] = dest.id
        for policy in policies.values():
            target = destinations.get(policy.target_destination_id)
            if target is not None:
                _check_policy_ports(policy, target)
        return cls(
            version=version,
            destinations=MappingProxyType(dict(destinations)),
            bindings=MappingProxyType(bindings),
            policies=MappingProxyType(dict(policies)),
        )

    def with_destination(self, dest: Destination) -> ConfigSnapshot:
        destinations = dict(self.destinations)
        destinations[dest.id] = dest
        return ConfigSnapshot.build(self.version + 1, destinations, self.policies)

    def without_destination(self, destination_id: str) -> ConfigSnapshot:
        destinations = dict(self.destinations)
        del destinations[destination_id]
        return ConfigSnapshot.build(self.version + 1, destinations, self.policies)

    def with_policy(self, policy: Policy) -> ConfigSnapshot:
        policies = dict(self.policies)
        policies[policy.id] = policy
        return ConfigSnapshot.build(self.version + 1, self.destinations, policies)

    def without_policy(self, policy_id: str) -> ConfigSnapshot:
        policies = dict(self.policies)
        del policies[policy_id]
        return ConfigSnapshot.build(self.version + 1, self.destinations, policies)


def _check_policy_ports(policy: Policy, target: Destination) -> None:
    extra = policy.allowed_ports - {target.port}
    if extra:
        raise ConfigurationError(
            f"policy {policy.id}: ports {sorted(extra)} are not served by "
            f"destination {target.id!r} (port {target.port})"
        )


class ConfigState:
    """Holder for the live snapshot. Thread-safe for one writer at a time
    and any number of concurrent readers."""

    def __init__(self, snapshot: ConfigSnapshot | None = None) -> None:
        self._snapshot = snapshot or ConfigSnapshot()
        self._write_lock = threading.Lock()

    @property
    def snapshot(self) -> ConfigSnapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    def update(self, mutate: Callable[[ConfigSnapshot], ConfigSnapshot | None]) -> ConfigSnapshot:
        """Apply ``mutate`` to the current snapshot and publish the result.

        ``mutate`` returns the new snapshot, or None for a no-op. Any
        exception it raises leaves the published snapshot untouched.
        """
        with self._write_lock:
            current = self._snapshot
            new = mutate(current)
            if new is None:
                return current
            self._snapshot = new
            return new

    def replace_all(
        self,
        destinations: Iterable[Destination],
        policies: Iterable[Policy],
    ) -> ConfigSnapshot:
        """Swap in a complete destination and policy set in one step."""
        dest_map: dict[str, Destination] = {}
        for dest in destinations:
            if dest.id in dest_map and dest_map[dest.id] != dest:
                raise ConfigurationError(f"duplicate destination id {dest.id!r}")
            dest_map[dest.id] = dest
        policy_map: dict[str, Policy] = {}
        for policy in policies:
            if policy.id in policy_map and policy_map[policy.id] != policy:
                raise ConfigurationError(f"duplicate policy id {policy.id!r}")
            policy_map[policy.id] = policy

        def _swap(current: ConfigSnapshot) -> ConfigSnapshot:
            return ConfigSnapshot.build(current.version + 1, dest_map, policy_map)

        new = self.update(_swap)
        logger.info(
            "Configuration replaced: %d destination(s), %d policy(ies), version %d",
            len(dest_map),
            len(policy_map),
            new.version,
        )
        return new
