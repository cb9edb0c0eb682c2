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
"""Waypoint management API routes.

Provides endpoints for:
  - Viewing waypoint status and audit stats
  - Registering / removing destinations
  - Upserting / removing policies
  - Dry-run evaluation of a connection (not audited)
  - Viewing recent audit log entries
  - Persisting the live configuration to disk
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel

from .config import save_config
from .errors import ConfigurationError, DestinationError
from .models import ConnectionMetadata, Destination, Policy
from .waypoint import WaypointServer

logger = logging.getLogger("egress_waypoint.api")

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class DestinationRequest(BaseModel):
    hosts: list[str]
    port: int
    gateway: str | None = None
    address: str | None = None


class PolicyRequest(BaseModel):
    destination: str
    namespaces: list[str] = []
    ports: list[int]


class EvaluateRequest(BaseModel):
    source: str | None = None
    host: str
    port: int


def create_router(server: WaypointServer) -> APIRouter:
    """Build the /api/waypoint router bound to a running WaypointServer."""
    router = APIRouter(prefix="/api/waypoint", tags=["waypoint"])

    @router.get("/status")
    async def get_status() -> dict:
        return server.get_status()

    @router.get("/destinations")
    async def list_destinations() -> dict:
        return {"destinations": [d.to_dict() for d in server.registry.list()]}

    @router.put("/destinations/{destination_id}")
    async def register_destination(destination_id: str, request: DestinationRequest) -> dict:
        try:
            dest = Destination(
                id=destination_id,
                hosts=frozenset(request.hosts),
                port=request.port,
                gateway_binding=request.gateway,
                address=request.address,
            )
            changed = server.registry.register(dest)
        except DestinationError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"status": "registered" if changed else "unchanged", "destination": dest.to_dict()}

    @router.delete("/destinations/{destination_id}")
    async def unregister_destination(destination_id: str) -> dict:
        try:
            server.registry.unregister(destination_id)
        except KeyError as exc:
            raise HTTPException(
                status_code=404, detail=f"Destination '{destination_id}' not found"
            ) from exc
        return {"status": "removed", "destination": destination_id}

    @router.get("/policies")
    async def list_policies() -> dict:
        return {"policies": [p.to_dict() for p in server.policies.list()]}

    @router.put("/policies/{policy_id}")
    async def upsert_policy(policy_id: str, request: PolicyRequest) -> dict:
        try:
            policy = Policy(
                id=policy_id,
                target_destination_id=request.destination,
                source_namespaces=frozenset(request.namespaces),
                allowed_ports=frozenset(request.ports),
            )
            changed = server.policies.upsert(policy)
        except ConfigurationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"status": "upserted" if changed else "unchanged", "policy": policy.to_dict()}

    @router.delete("/policies/{policy_id}")
    async def remove_policy(policy_id: str) -> dict:
        try:
            server.policies.remove(policy_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=f"Policy '{policy_id}' not found") from exc
        return {"status": "removed", "policy": policy_id}

    @router.post("/evaluate")
    async def evaluate(request: EvaluateRequest) -> dict:
        metadata = ConnectionMetadata(
            requested_host=request.host,
            requested_port=request.port,
            peer_identity=request.source,
            identity_verified=request.source is not None,
        )
        return server.engine.evaluate(metadata, record=False).to_dict()

    @router.get("/audit")
    async def get_audit_log(limit: int = 50) -> dict:
        entries = server.audit.read_recent(min(limit, 200))
        return {
            "stats": server.audit.get_stats(),
            "entries": [
                {
                    "timestamp": e.timestamp,
                    "event_type": e.event_type,
                    "source_namespace": e.source_namespace,
                    "requested_host": e.requested_host,
                    "requested_port": e.requested_port,
                    "destination_id": e.destination_id,
                    "reason_code": e.reason_code,
                    "matched_policy_id": e.matched_policy_id,
                    "upstream": e.upstream,
                }
                for e in entries
            ],
        }

    @router.post("/config/save")
    async def save_live_config() -> dict:
        save_config(server.current_config(), server.config_path)
        logger.info("Persisted live waypoint configuration")
        return {"status": "saved", "config_version": server.state.version}

    return router


def create_app(server: WaypointServer) -> FastAPI:
    app = FastAPI(title="Egress Waypoint API", description="Waypoint policy management")
    app.include_router(create_router(server))
    return app
