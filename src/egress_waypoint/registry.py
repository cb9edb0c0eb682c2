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
"""Destination registry -- which external services exist, and where.

Lookup is exact on port and set-membership on host. There is no
wildcard or suffix matching: a host that is not literally listed on a
destination does not resolve, so an unregistered host:port can never
reach an upstream.
"""

from __future__ import annotations

import logging

from .errors import DestinationError, DestinationErrorKind
from .models import Destination, normalize_host
from .state import ConfigSnapshot, ConfigState

logger = logging.getLogger("egress_waypoint.registry")


class DestinationRegistry:
    """Registered destinations, backed by the shared ConfigState."""

    def __init__(self, state: ConfigState) -> None:
        self._state = state

    def resolve(
        self,
        host: str,
        port: int,
        snapshot: ConfigSnapshot | None = None,
    ) -> Destination:
        """Return the destination answering on host:port.

        Raises DestinationError(NOT_REGISTERED) when nothing claims it.
        Pass ``snapshot`` to resolve against a view the caller already holds.
        """
        snap = snapshot if snapshot is not None else self._state.snapshot
        dest_id = snap.bindings.get((normalize_host(host), port))
        if dest_id is None:
            raise DestinationError(
                DestinationErrorKind.NOT_REGISTERED,
                f"{host}:{port} is not a registered destination",
            )
        return snap.destinations[dest_id]

    def register(self, destination: Destination) -> bool:
        """Add or replace a destination.

        Returns True if the live state changed, False for an identical
        re-registration. Raises DestinationError(CONFLICT) if any of its
        host:port pairs already belongs to another destination.
        """

        changed = False

        def _mutate(snap: ConfigSnapshot) -> ConfigSnapshot | None:
            nonlocal changed
            if snap.destinations.get(destination.id) == destination:
                return None
            changed = True
            return snap.with_destination(destination)

        self._state.update(_mutate)
        if not changed:
            logger.debug("Destination %s unchanged", destination.id)
            return False
        logger.info(
            "Registered destination %s (%s:%d via %s)",
            destination.id,
            ",".join(sorted(destination.hosts)),
            destination.port,
            destination.gateway_binding or "<unbound>",
        )
        return True

    def unregister(self, destination_id: str) -> None:
        """Remove a destination. Policies targeting it become inert."""

        def _mutate(snap: ConfigSnapshot) -> ConfigSnapshot:
            if destination_id not in snap.destinations:
                raise KeyError(destination_id)
            return snap.without_destination(destination_id)

        self._state.update(_mutate)
        logger.info("Unregistered destination %s", destination_id)

    def get(self, destination_id: str) -> Destination | None:
        return self._state.snapshot.destinations.get(destination_id)

    def list(self) -> list[Destination]:
        return list(self._state.snapshot.destinations.values())

    def __len__(self) -> int:
        return len(self._state.snapshot.destinations)
