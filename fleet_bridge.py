#!/usr/bin/env python3
"""
Fleet MQTT Bridge
=================
Long-lived service that keeps one MQTT connection per robot section,
turns robot telemetry into persisted state and notifications on the
fleet backend, and exposes health, feed and command endpoints locally.

Usage:
    pip install -e .
    python fleet_bridge.py

Environment variables (or a .env file next to this script):
    FLEET_API_BASE       - Backend REST API base URL
    FLEET_API_TOKEN      - Optional bearer token for the backend
    FLEET_BRIDGE_PORT    - Port to run on (default 8099)
    FLEET_VIEWER_ROLE    - Viewer role for toast/feed filtering
    FLEET_VIEWER_PROJECT - Viewer project name (restricted role)
"""

from functools import partial

from fastapi import FastAPI
import uvicorn

from fleetbridge.config import CONFIG, log
from fleetbridge.cache import Cache
from fleetbridge.api_client import FleetAPI
from fleetbridge.session import ViewerSession
from fleetbridge.topics import FleetSnapshot
from fleetbridge.dedup import DedupGuard
from fleetbridge.projection import StateProjector
from fleetbridge.notifier import NotificationRouter
from fleetbridge.mqtt_client import ConnectionRegistry, publish_once
from fleetbridge.pipeline import IngestPipeline
from fleetbridge.routes import register_routes


def build_app(api: FleetAPI = None, client_factory=None, session: ViewerSession = None):
    """Wire every component and return ``(app, registry)``.

    Nothing connects here; call ``registry.connect_all()`` to start.
    """
    api = api or FleetAPI(Cache())
    session = session or ViewerSession()
    snapshot = FleetSnapshot(api)
    guard = DedupGuard()
    projector = StateProjector(api, snapshot)
    router = NotificationRouter(api, session, guard)
    if client_factory:
        registry = ConnectionRegistry(snapshot, client_factory=client_factory)
        one_shot = partial(publish_once, client_factory=client_factory)
    else:
        registry = ConnectionRegistry(snapshot)
        one_shot = publish_once
    pipeline = IngestPipeline(snapshot, session, guard, projector, router,
                              registry=registry, one_shot_publish=one_shot)

    app = FastAPI(
        title="Fleet MQTT Bridge",
        description="Robot fleet MQTT ingestion, notifications and commands",
        version="1.0.0",
    )
    register_routes(app, snapshot, registry, pipeline, router, session)
    return app, registry


app, registry = build_app()


# ─── Main ────────────────────────────────────────────────────────────────────

def main():
    log.info("Starting Fleet Bridge on %s:%d", CONFIG["bridge_host"], CONFIG["bridge_port"])
    log.info("API docs at http://localhost:%d/docs", CONFIG["bridge_port"])
    log.info("Backend: %s", CONFIG["api_base"])

    opened = registry.connect_all()
    if not opened:
        log.info("─" * 60)
        log.info("MQTT: no robot sections with complete broker credentials.")
        log.info("  Check FLEET_API_BASE and the robots' mqttUrl/credentials,")
        log.info("  then POST /api/reconnect to retry.")
        log.info("─" * 60)

    try:
        uvicorn.run(app, host=CONFIG["bridge_host"], port=CONFIG["bridge_port"], log_level="info")
    finally:
        registry.close()


if __name__ == "__main__":
    main()
