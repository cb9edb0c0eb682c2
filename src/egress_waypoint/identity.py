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
"""Identity resolver -- peer identity material to a canonical SourceIdentity.

Accepted forms:
  spiffe://<trust-domain>/ns/<namespace>/sa/<service-account>
  <namespace>                                   (bare namespace claim)

The transport layer has already authenticated the peer; this module only
refuses material that was not verified or cannot be parsed. Failures are
final for the connection and are never retried.
"""

from __future__ import annotations

import logging
import re

from .errors import IdentityError, IdentityErrorKind
from .models import ConnectionMetadata, SourceIdentity

logger = logging.getLogger("egress_waypoint.identity")

# Kubernetes namespace / service account names (DNS-1123 labels)
_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$")
_SPIFFE_PATH = re.compile(r"^/ns/(?P<ns>[^/]+)/sa/(?P<sa>[^/]+)$")
_SPIFFE_PREFIX = "spiffe://"


class IdentityResolver:
    """Resolves the calling workload's namespace from connection metadata."""

    def __init__(self, trust_domain: str | None = None) -> None:
        self._trust_domain = trust_domain.lower() if trust_domain else None

    @property
    def trust_domain(self) -> str | None:
        return self._trust_domain

    def resolve(self, metadata: ConnectionMetadata) -> SourceIdentity:
        raw = (metadata.peer_identity or "").strip()
        if not raw or not metadata.identity_verified:
            raise IdentityError(
                IdentityErrorKind.UNAUTHENTICATED,
                "connection carries no verified peer identity",
            )
        if raw.lower().startswith(_SPIFFE_PREFIX):
            return self._parse_spiffe(raw)
        return SourceIdentity(namespace=_check_label(raw, "namespace"))

    def _parse_spiffe(self, raw: str) -> SourceIdentity:
        rest = raw[len(_SPIFFE_PREFIX):]
        domain, sep, path = rest.partition("/")
        if not domain or not sep:
            raise IdentityError(IdentityErrorKind.MALFORMED, f"malformed SPIFFE id: {raw}")
        domain = domain.lower()
        if self._trust_domain and domain != self._trust_domain:
            logger.warning(
                "Rejected identity from trust domain %s (expected %s)", domain, self._trust_domain
            )
            raise IdentityError(
                IdentityErrorKind.UNTRUSTED_DOMAIN,
                f"trust domain {domain!r} is not {self._trust_domain!r}",
            )
        m = _SPIFFE_PATH.match("/" + path)
        if not m:
            raise IdentityError(IdentityErrorKind.MALFORMED, f"malformed SPIFFE id: {raw}")
        return SourceIdentity(
            namespace=_check_label(m.group("ns"), "namespace"),
            service_account=_check_label(m.group("sa"), "service account"),
            trust_domain=domain,
        )


def _check_label(value: str, what: str) -> str:
    if not _DNS_LABEL.match(value):
        raise IdentityError(IdentityErrorKind.MALFORMED, f"invalid {what}: {value!r}")
    return value
