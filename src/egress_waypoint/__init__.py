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
"""Egress Waypoint -- namespace-scoped egress authorization.

A single waypoint forwards workload traffic to external services.
Each external service is registered as a Destination and carries its
own ALLOW policies; a connection is allowed only when a policy bound to
that exact destination names the caller's namespace and port.

Security properties:
  - Default DENY: no matching ALLOW policy means the connection is reset
  - Per-destination scoping: a policy never affects another destination
  - Exact host matching: no wildcards, unregistered host:port is denied
  - Fail closed: missing identity, data or internal errors deny
  - Atomic updates: evaluations see whole configuration snapshots
  - Full audit logging: one record per evaluated connection
"""

__version__ = "1.0.0"
