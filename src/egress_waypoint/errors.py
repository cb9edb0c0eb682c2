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
"""Error taxonomy for the egress waypoint.

Two families:
  - Per-connection errors (IdentityError, DestinationError NOT_REGISTERED)
    are raised by the resolvers and converted to DENY by the engine.
  - Configuration errors (ConfigurationError, DestinationError CONFLICT)
    are raised to the control-plane caller and must never be swallowed.
"""

from __future__ import annotations

from enum import Enum


class IdentityErrorKind(str, Enum):
    """Why a connection could not be given a source identity."""

    UNAUTHENTICATED = "unauthenticated"
    MALFORMED = "malformed"
    UNTRUSTED_DOMAIN = "untrusted_domain"


class DestinationErrorKind(str, Enum):
    """Why a destination lookup or registration failed."""

    NOT_REGISTERED = "not_registered"
    CONFLICT = "conflict"


class IdentityError(Exception):
    """Raised when a connection carries no usable verified peer identity."""

    def __init__(self, kind: IdentityErrorKind, message: str = "") -> None:
        self.kind = kind
        super().__init__(message or kind.value)


class DestinationError(Exception):
    """Raised when a host:port is unregistered or a registration collides."""

    def __init__(self, kind: DestinationErrorKind, message: str = "") -> None:
        self.kind = kind
        super().__init__(message or kind.value)


class ConfigurationError(ValueError):
    """Raised when a Destination, Policy or config file is malformed."""
