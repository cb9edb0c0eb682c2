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
"""Decision engine -- per-destination, default-deny L4 authorization.

For one connection:
  1. Resolve the source identity          (failure -> DENY no_identity)
  2. Resolve the destination by host:port (failure -> DENY no_destination)
  3. Require a gateway binding            (missing  -> DENY unbound_destination)
  4. Fetch ONLY that destination's policies
  5. ALLOW if any policy matches namespace AND port, else DENY

Evaluation reads a single configuration snapshot from start to finish
and always returns a Decision. Nothing here raises to the caller.
"""

from __future__ import annotations

import logging
from typing import Callable

from .audit import AuditEmitter
from .errors import DestinationError, IdentityError
from .identity import IdentityResolver
from .models import ConnectionMetadata, Decision, ReasonCode
from .policy_store import PolicyStore
from .registry import DestinationRegistry
from .state import ConfigState

logger = logging.getLogger("egress_waypoint.engine")


class DecisionEngine:
    """Evaluates captured connections against the live configuration.

    ``gateway`` is the name of the forwarding path this engine serves.
    When set, destinations bound to a different gateway are treated as
    unbound. When None, any non-empty binding is accepted.
    """

    def __init__(
        self,
        state: ConfigState,
        resolver: IdentityResolver | None = None,
        audit: AuditEmitter | None = None,
        gateway: str | None = None,
    ) -> None:
        self._state = state
        self._resolver = resolver or IdentityResolver()
        self._registry = DestinationRegistry(state)
        self._policies = PolicyStore(state)
        self._audit = audit or AuditEmitter()
        self._gateway = gateway

    @property
    def audit(self) -> AuditEmitter:
        return self._audit

    @property
    def gateway(self) -> str | None:
        return self._gateway

    def evaluate(
        self,
        metadata: ConnectionMetadata,
        *,
        aborted: Callable[[], bool] | None = None,
        record: bool = True,
    ) -> Decision:
        """Return the verdict for one connection. Never raises.

        ``aborted`` is polled between steps; once it reports True the
        evaluation stops, an abandonment record is written and a
        DENY/abandoned decision is returned. ``record=False`` skips the
        audit record (dry runs from the management API).
        """
        try:
            decision = self._decide(metadata, aborted)
        except _Abandoned:
            if record:
                self._audit.record_abandoned(metadata)
            return Decision.deny(ReasonCode.ABANDONED)
        except Exception:
            logger.exception(
                "Evaluation failed for connection %s -> %s:%s; failing closed",
                metadata.connection_id,
                metadata.requested_host,
                metadata.requested_port,
            )
            decision = Decision.deny(ReasonCode.INTERNAL_ERROR)

        if record:
            self._audit.record(decision, metadata)
        return decision

    def _decide(
        self,
        metadata: ConnectionMetadata,
        aborted: Callable[[], bool] | None,
    ) -> Decision:
        def _checkpoint() -> None:
            if aborted is not None and aborted():
                raise _Abandoned()

        snap = self._state.snapshot

        _checkpoint()
        try:
            identity = self._resolver.resolve(metadata)
        except IdentityError as exc:
            logger.debug("No identity for %s: %s", metadata.connection_id, exc)
            return Decision.deny(ReasonCode.NO_IDENTITY)
        namespace = identity.namespace

        _checkpoint()
        try:
            dest = self._registry.resolve(metadata.requested_host, metadata.requested_port, snap)
        except DestinationError as exc:
            logger.debug("No destination for %s: %s", metadata.connection_id, exc)
            return Decision.deny(ReasonCode.NO_DESTINATION, namespace=namespace)

        if not dest.gateway_binding or (self._gateway and dest.gateway_binding != self._gateway):
            return Decision.deny(ReasonCode.UNBOUND_DESTINATION, dest.id, namespace)

        _checkpoint()
        for policy in self._policies.policies_for(dest.id, snap):
            if policy.matches(namespace, metadata.requested_port):
                return Decision.allow(
                    dest.id,
                    policy.id,
                    namespace,
                    upstream_host=dest.address or metadata.requested_host,
                )
        return Decision.deny(ReasonCode.NO_MATCHING_POLICY, dest.id, namespace)


class _Abandoned(Exception):
    pass
