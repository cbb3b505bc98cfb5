"""
Configuration and logging for Fleet Bridge.
"""

import os
import logging
from pathlib import Path

from dotenv import load_dotenv

# Load .env file if present (before reading os.environ in CONFIG)
load_dotenv(Path(__file__).parent.parent / ".env")


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == "true"


# ─── Configuration ───────────────────────────────────────────────────────────

CONFIG = {
    # Backend REST API (robots / projects / users / notifications / logs)
    "api_base": os.environ.get("FLEET_API_BASE", "http://localhost/robots_api/api").rstrip("/"),
    "api_token": os.environ.get("FLEET_API_TOKEN", ""),
    "api_timeout": float(os.environ.get("FLEET_API_TIMEOUT", "15")),

    # Local REST surface
    "bridge_port": int(os.environ.get("FLEET_BRIDGE_PORT", "8099")),
    "bridge_host": os.environ.get("FLEET_BRIDGE_HOST", "0.0.0.0"),

    # MQTT over secure WebSocket. Host and credentials come per Section
    # from the backend; the port and path are fixed for the whole fleet.
    "mqtt_port": int(os.environ.get("FLEET_MQTT_PORT", "8884")),
    "mqtt_ws_path": os.environ.get("FLEET_MQTT_WS_PATH", "/mqtt"),
    "mqtt_tls": _env_bool("FLEET_MQTT_TLS", "true"),
    "mqtt_keepalive": int(os.environ.get("FLEET_MQTT_KEEPALIVE", "30")),
    "mqtt_reconnect_period": int(os.environ.get("FLEET_MQTT_RECONNECT_PERIOD", "5")),
    "mqtt_connect_timeout": float(os.environ.get("FLEET_MQTT_CONNECT_TIMEOUT", "10")),
    "publish_timeout": float(os.environ.get("FLEET_PUBLISH_TIMEOUT", "10")),
    "reconnect_delay": float(os.environ.get("FLEET_RECONNECT_DELAY", "2")),
    "reconnect_all_delay": float(os.environ.get("FLEET_RECONNECT_ALL_DELAY", "3")),

    # Telemetry rules
    "voltage_threshold": int(os.environ.get("FLEET_VOLTAGE_THRESHOLD", "15")),
    "half_cycle_step": float(os.environ.get("FLEET_HALF_CYCLE_STEP", "0.5")),
    "field_write_delay": float(os.environ.get("FLEET_FIELD_WRITE_DELAY", "0.2")),

    # Dedup windows (seconds)
    "message_dedup_window": float(os.environ.get("FLEET_MESSAGE_DEDUP_WINDOW", "3")),
    "half_cycle_window": float(os.environ.get("FLEET_HALF_CYCLE_WINDOW", "5")),
    "toast_window": float(os.environ.get("FLEET_TOAST_WINDOW", "5")),
    "danger_window": float(os.environ.get("FLEET_DANGER_WINDOW", "30")),

    # In-memory feeds
    "feed_limit": int(os.environ.get("FLEET_FEED_LIMIT", "1000")),
    "toast_limit": int(os.environ.get("FLEET_TOAST_LIMIT", "100")),

    # Cache TTL (seconds) - how often to re-fetch lookups from the backend
    "cache_ttl_projects": 30,
    "cache_ttl_users": 300,

    # Background refresh
    "snapshot_refresh_interval": float(os.environ.get("FLEET_SNAPSHOT_REFRESH", "300")),
    "status_request_interval": float(os.environ.get("FLEET_STATUS_REQUEST_INTERVAL", "86400")),

    # Viewer the notifications are filtered for ("user" is the restricted role)
    "viewer_role": os.environ.get("FLEET_VIEWER_ROLE", "admin"),
    "viewer_project": os.environ.get("FLEET_VIEWER_PROJECT", ""),

    # MQTT Traffic Logging
    "mqtt_log_enabled": _env_bool("FLEET_MQTT_LOG", "false"),
    "mqtt_log_file": os.environ.get("FLEET_MQTT_LOG_FILE", "mqtt_traffic.log"),

    "log_level": os.environ.get("FLEET_LOG_LEVEL", "INFO").upper(),
}

# ─── Logging ─────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=getattr(logging, CONFIG["log_level"], logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
log = logging.getLogger("fleet-bridge")
