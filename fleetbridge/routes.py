"""
FastAPI route handlers for the Fleet Bridge REST API.

All routes are registered via
``register_routes(app, snapshot, registry, pipeline, router, session)``.
"""

from datetime import datetime, timezone

from fastapi import HTTPException

from fleetbridge.config import CONFIG, log
from fleetbridge.commands import CommandError, parse_schedule
from fleetbridge.models import TROLLEY_SECTION


def register_routes(app, snapshot, registry, pipeline, router, session):
    """Register all API route handlers on *app*."""

    # ── Health ───────────────────────────────────────────────────────

    @app.get("/")
    def root():
        return {
            "status": "ok",
            "service": "fleet-bridge",
            "version": "1.0.0",
            "connections": registry.connection_count,
            "connected": registry.connected_count,
        }

    # ── Connections ──────────────────────────────────────────────────

    @app.get("/api/connections")
    def get_connections():
        return {
            **registry.summary(),
            "connections": registry.connections(),
        }

    @app.get("/api/connections/{robot_id}/{section}")
    def get_connection(robot_id: str, section: str):
        conn = registry.get(robot_id, section)
        info = conn.as_dict() if conn else {"robotId": robot_id, "sectionName": section}
        info["state"] = registry.status(robot_id, section)
        return info

    @app.post("/api/reconnect")
    def reconnect_all():
        registry.reconnect_all()
        return {"ok": True, "message": "Reconnection of all MQTT connections initiated"}

    @app.post("/api/reconnect/{robot_id}/{section}")
    def reconnect_one(robot_id: str, section: str):
        if not registry.reconnect(robot_id, section):
            raise HTTPException(404, f"No connection for {robot_id}-{section}")
        return {"ok": True, "message": f"Reconnecting {robot_id}-{section}"}

    # ── Notifications & toasts ───────────────────────────────────────

    @app.get("/api/notifications")
    def get_notifications(limit: int = 100, alerts_only: bool = False):
        items = router.feed.items()
        if alerts_only:
            items = [n for n in items if n.get("isAlert")]
        return {"count": len(items), "notifications": items[:limit]}

    @app.get("/api/toasts")
    def get_toasts(clear: bool = False):
        items = router.toasts.items()
        if clear:
            router.toasts.clear()
        return {"count": len(items), "toasts": items}

    # ── Fleet ────────────────────────────────────────────────────────

    @app.get("/api/robots")
    def get_robots(refresh: bool = False):
        if refresh:
            try:
                snapshot.refresh()
            except HTTPException:
                raise
            except Exception as e:
                log.error("Fleet refresh failed: %s", e)
                raise HTTPException(502, f"Backend unavailable: {e}")
        return snapshot.robots

    # ── Commands ─────────────────────────────────────────────────────

    @app.post("/api/publish")
    def publish(payload: dict):
        robot_id = payload.get("robotId")
        section = payload.get("sectionName")
        value = payload.get("message") or payload.get("button")
        if not robot_id or not section or not value:
            raise HTTPException(400, "robotId, sectionName and message are required")
        try:
            ok = pipeline.publish_button(robot_id, section, str(value))
        except CommandError as e:
            raise HTTPException(404, str(e))
        if not ok:
            raise HTTPException(503, f"No connected client for {robot_id}-{section}")
        return {"ok": True, "robotId": robot_id, "sectionName": section}

    @app.post("/api/robots/{robot_id}/status-request")
    def status_request(robot_id: str):
        try:
            results = pipeline.request_status(robot_id)
        except CommandError as e:
            raise HTTPException(404, str(e))
        return {"ok": any(results.values()), "results": results}

    @app.post("/api/robots/{robot_id}/schedule")
    def send_schedule(robot_id: str, payload: dict):
        days = payload.get("days") or []
        section = payload.get("sectionName") or TROLLEY_SECTION
        try:
            sent, command = pipeline.send_schedule(
                robot_id, days, int(payload.get("hour", 0)), int(payload.get("minute", 0)),
                section_name=section)
        except CommandError as e:
            raise HTTPException(400, str(e))
        except (TypeError, ValueError) as e:
            raise HTTPException(400, f"Invalid schedule: {e}")
        if not sent:
            raise HTTPException(504, f"Schedule publish to {robot_id}-{section} failed")
        return {"ok": True, "command": command}

    @app.get("/api/schedule/parse")
    def parse_schedule_command(command: str):
        schedule = parse_schedule(command)
        if schedule is None:
            raise HTTPException(400, f"Not a schedule command: {command}")
        return schedule.to_dict()

    @app.post("/api/robots/{robot_id}/time-sync")
    def time_sync(robot_id: str):
        try:
            results = pipeline.sync_time(robot_id)
        except CommandError as e:
            raise HTTPException(404, str(e))
        results["ok"] = results["errors"] == 0 and results["sent"] > 0
        results["timestamp"] = datetime.now(timezone.utc).isoformat()
        return results

    # ── Viewer session ───────────────────────────────────────────────

    @app.get("/api/session")
    def get_session():
        return session.as_dict()

    @app.post("/api/session")
    def login(payload: dict):
        role = payload.get("role")
        if not role:
            raise HTTPException(400, "role is required")
        session.login(role, payload.get("projectName") or "")
        return session.as_dict()

    @app.delete("/api/session")
    def logout():
        session.logout()
        return session.as_dict()

    # ── Config (non-secret) ──────────────────────────────────────────

    @app.get("/api/config")
    def get_config():
        return {k: CONFIG[k] for k in (
            "api_base", "mqtt_port", "mqtt_ws_path", "voltage_threshold",
            "message_dedup_window", "toast_window", "danger_window",
            "half_cycle_window", "feed_limit",
        )}
