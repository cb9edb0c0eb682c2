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
"""Policy store -- additive ALLOW rules, each scoped to one destination.

A policy may be stored before its destination exists; it is simply
never retrieved until that destination is registered.
"""

from __future__ import annotations

import logging

from .models import Policy
from .state import ConfigSnapshot, ConfigState

logger = logging.getLogger("egress_waypoint.policy_store")


class PolicyStore:
    """Authorization policies, backed by the shared ConfigState."""

    def __init__(self, state: ConfigState) -> None:
        self._state = state

    def policies_for(
        self,
        destination_id: str,
        snapshot: ConfigSnapshot | None = None,
    ) -> tuple[Policy, ...]:
        """Policies bound to ``destination_id``, in insertion order.

        Returns an empty tuple while the destination is unregistered.
        """
        snap = snapshot if snapshot is not None else self._state.snapshot
        if destination_id not in snap.destinations:
            return ()
        return tuple(p for p in snap.policies.values() if p.target_destination_id == destination_id)

    def upsert(self, policy: Policy) -> bool:
        """Insert or replace a policy. Returns False for an identical re-upsert.

        Raises ConfigurationError if the policy names ports its (registered)
        destination does not serve.
        """

        changed = False

        def _mutate(snap: ConfigSnapshot) -> ConfigSnapshot | None:
            nonlocal changed
            if snap.policies.get(policy.id) == policy:
                return None
            changed = True
            return snap.with_policy(policy)

        snap = self._state.update(_mutate)
        if not changed:
            logger.debug("Policy %s unchanged", policy.id)
            return False

        if not policy.source_namespaces:
            logger.warning("Policy %s has no source namespaces and will match nothing", policy.id)
        if policy.target_destination_id not in snap.destinations:
            logger.info(
                "Policy %s targets unregistered destination %s (inert until registered)",
                policy.id,
                policy.target_destination_id,
            )
        else:
            logger.info(
                "Upserted policy %s -> %s (namespaces=%s, ports=%s)",
                policy.id,
                policy.target_destination_id,
                ",".join(sorted(policy.source_namespaces)) or "<none>",
                ",".join(str(p) for p in sorted(policy.allowed_ports)),
            )
        return True

    def remove(self, policy_id: str) -> None:
        """Delete a policy. Raises KeyError if it does not exist."""

        def _mutate(snap: ConfigSnapshot) -> ConfigSnapshot:
            if policy_id not in snap.policies:
                raise KeyError(policy_id)
            return snap.without_policy(policy_id)

        self._state.update(_mutate)
        logger.info("Removed policy %s", policy_id)

    def get(self, policy_id: str) -> Policy | None:
        return self._state.snapshot.policies.get(policy_id)

    def list(self) -> list[Policy]:
        return list(self._state.snapshot.policies.values())

    def __len__(self) -> int:
        return len(self._state.snapshot.policies)
