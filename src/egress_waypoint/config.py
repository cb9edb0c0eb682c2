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
"""Waypoint configuration schema.

Config location: $WAYPOINT_HOME/waypoint.yaml (default ~/.egress-waypoint)

Example:

    gateway: waypoint
    trust_domain: cluster.local
    listen: {host: 0.0.0.0, port: 15008}
    destinations:
      - id: postgres-1
        hosts: ["${PG1_IP}.nip.io", "${PG1_IP}"]
        port: 5432
        gateway: waypoint
        address: ${PG1_IP}
    policies:
      - id: rds-demo-1-to-postgres-1
        destination: postgres-1
        namespaces: [rds-demo-1]
        ports: [5432]

``${VAR}`` references are expanded from the environment before parsing;
a reference to an unset variable raises ConfigurationError.
A missing file means an empty configuration: every connection is denied.
Malformed content is a control-plane error and raises ConfigurationError
rather than falling back to defaults.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError
from .models import Destination, Policy

logger = logging.getLogger("egress_waypoint.config")

_UNSET_VAR = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

# ---------------------------------------------------------------------------
# Default paths
# ---------------------------------------------------------------------------
_WAYPOINT_HOME = Path(os.environ.get("WAYPOINT_HOME", Path.home() / ".egress-waypoint"))
DEFAULT_CONFIG_PATH = _WAYPOINT_HOME / "waypoint.yaml"

DEFAULT_GATEWAY = "waypoint"
DEFAULT_LISTEN_PORT = 15008


@dataclass
class WaypointConfig:
    """Full waypoint configuration: listener settings plus the policy model."""

    # Name of the forwarding path this waypoint implements
    gateway: str = DEFAULT_GATEWAY

    # Only SPIFFE ids from this trust domain are accepted (None = any)
    trust_domain: str | None = "cluster.local"

    listen_host: str = "0.0.0.0"
    listen_port: int = DEFAULT_LISTEN_PORT

    # Client addresses allowed to assert a peer identity header
    trusted_capture_addresses: list[str] = field(default_factory=lambda: ["127.0.0.1", "::1"])

    audit_log_path: str = str(_WAYPOINT_HOME / "egress_audit.log")

    destinations: list[Destination] = field(default_factory=list)
    policies: list[Policy] = field(default_factory=list)


def load_config(path: Path | str | None = None) -> WaypointConfig:
    """Load waypoint configuration from a YAML file."""
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        logger.info("No waypoint config at %s -- denying all egress", config_path)
        return WaypointConfig()

    text = os.path.expandvars(config_path.read_text(encoding="utf-8"))
    unset = sorted(set(_UNSET_VAR.findall(text)))
    if unset:
        raise ConfigurationError(
            f"{config_path}: environment variable(s) not set: {', '.join(unset)}"
        )
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"{config_path}: invalid YAML: {exc}") from exc
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{config_path}: top level must be a mapping")
    config = parse_config(raw)
    logger.info(
        "Loaded %s: %d destination(s), %d policy(ies)",
        config_path,
        len(config.destinations),
        len(config.policies),
    )
    return config


def save_config(config: WaypointConfig, path: Path | str | None = None) -> None:
    """Save waypoint configuration to a YAML file."""
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    config_path.parent.mkdir(parents=True, exist_ok=True)

    data: dict[str, Any] = {
        "gateway": config.gateway,
        "trust_domain": config.trust_domain,
        "listen": {
            "host": config.listen_host,
            "port": config.listen_port,
        },
        "trusted_capture_addresses": list(config.trusted_capture_addresses),
        "audit_log_path": config.audit_log_path,
        "destinations": [d.to_dict() for d in config.destinations],
        "policies": [
            {
                "id": p.id,
                "destination": p.target_destination_id,
                "namespaces": sorted(p.source_namespaces),
                "ports": sorted(p.allowed_ports),
            }
            for p in config.policies
        ],
    }
    config_path.write_text(
        yaml.safe_dump(data, default_flow_style=False, sort_keys=False), encoding="utf-8"
    )
    logger.info("Saved waypoint config to %s", config_path)


def parse_config(raw: dict) -> WaypointConfig:
    """Parse a raw YAML dict into WaypointConfig."""
    listen = raw.get("listen") or {}
    if not isinstance(listen, dict):
        raise ConfigurationError("listen: expected a mapping")

    destinations = [parse_destination(entry) for entry in _as_list(raw, "destinations")]
    policies = [parse_policy(entry) for entry in _as_list(raw, "policies")]

    trusted = raw.get("trusted_capture_addresses", ["127.0.0.1", "::1"])
    if not isinstance(trusted, list):
        raise ConfigurationError("trusted_capture_addresses: expected a list")

    return WaypointConfig(
        gateway=str(raw.get("gateway") or DEFAULT_GATEWAY),
        trust_domain=raw.get("trust_domain", "cluster.local"),
        listen_host=listen.get("host", "0.0.0.0"),
        listen_port=listen.get("port", DEFAULT_LISTEN_PORT),
        trusted_capture_addresses=[str(a) for a in trusted],
        audit_log_path=raw.get("audit_log_path", str(_WAYPOINT_HOME / "egress_audit.log")),
        destinations=destinations,
        policies=policies,
    )


def parse_destination(entry: Any) -> Destination:
    if not isinstance(entry, dict):
        raise ConfigurationError(f"destination entry must be a mapping, got {entry!r}")
    return Destination(
        id=entry.get("id", ""),
        hosts=entry.get("hosts") or [],
        port=entry.get("port"),
        gateway_binding=entry.get("gateway"),
        address=entry.get("address"),
    )


def parse_policy(entry: Any) -> Policy:
    if not isinstance(entry, dict):
        raise ConfigurationError(f"policy entry must be a mapping, got {entry!r}")
    return Policy(
        id=entry.get("id", ""),
        target_destination_id=entry.get("destination", ""),
        source_namespaces=entry.get("namespaces") or [],
        allowed_ports=entry.get("ports") or [],
        action=entry.get("action", "ALLOW"),
    )


def _as_list(raw: dict, key: str) -> list:
    value = raw.get(key) or []
    if not isinstance(value, list):
        raise ConfigurationError(f"{key}: expected a list")
    return value
