"""
MQTT connections to the fleet's brokers.

Every robot Section has its own broker account (secure MQTT over
WebSocket) with two topics:

  Topic_subscribe  ← telemetry and status lines from the robot
  Topic_main       → commands to the robot

The registry keeps one long-lived client per (robot, section) and
subscribes it to ``Topic_subscribe`` only; listening on ``Topic_main``
would echo our own commands back into the pipeline. Schedule and clock
commands use short-lived one-shot clients instead.
"""

import ssl
import json
import time
import uuid
import threading
import logging
from logging.handlers import RotatingFileHandler
from datetime import datetime, timezone
from typing import Callable, Optional

import paho.mqtt.client as paho_mqtt

from fleetbridge.config import CONFIG, log
from fleetbridge.commands import STATUS_REQUEST
from fleetbridge.models import Section

STATE_CONNECTED = "connected"
STATE_CONNECTING = "connecting"
STATE_DISCONNECTED = "disconnected"

_traffic_logger: Optional[logging.Logger] = None


# ── MQTT traffic logging ─────────────────────────────────────────────────

def _setup_traffic_logger() -> Optional[logging.Logger]:
    """Separate logger for MQTT traffic with rotation (enabled by config)."""
    global _traffic_logger
    if _traffic_logger is not None or not CONFIG.get("mqtt_log_enabled"):
        return _traffic_logger
    log_file = CONFIG.get("mqtt_log_file", "mqtt_traffic.log")
    logger = logging.getLogger("fleet-mqtt-traffic")
    logger.setLevel(logging.DEBUG)
    logger.handlers = []
    # Rotating file handler: 10MB per file, keep 3 backups (40MB max)
    fh = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=3)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    ))
    logger.addHandler(fh)
    logger.propagate = False
    log.info("MQTT traffic logging enabled: %s", log_file)
    _traffic_logger = logger
    return logger


def log_traffic(direction: str, topic: str, payload: str):
    logger = _setup_traffic_logger()
    if logger:
        logger.debug("%s [%s] (%d bytes): %s", direction, topic, len(payload), payload[:500])


# ── client construction ──────────────────────────────────────────────────

def make_client(client_id: str, section: Section, reconnect: bool = True):
    """paho client for a Section's broker (WebSocket, TLS, credentials)."""
    client = paho_mqtt.Client(
        client_id=client_id,
        protocol=paho_mqtt.MQTTv311,
        transport="websockets",
        callback_api_version=paho_mqtt.CallbackAPIVersion.VERSION2,
    )
    client.ws_set_options(path=CONFIG["mqtt_ws_path"])
    if CONFIG["mqtt_tls"]:
        client.tls_set_context(ssl.create_default_context())
    client.username_pw_set(section.username, section.password)
    if reconnect:
        # Constant retry interval, no exponential backoff
        period = CONFIG["mqtt_reconnect_period"]
        client.reconnect_delay_set(min_delay=period, max_delay=period)
    client.connect_timeout = CONFIG["mqtt_connect_timeout"]
    return client


def publish_once(section: Section, topic: str, payload: str, timeout: float = None,
                 client_factory: Callable = make_client) -> bool:
    """Connect, publish one message and disconnect.

    Returns False on broker error or when *timeout* seconds pass first.
    The client is closed on every path.
    """
    timeout = CONFIG["publish_timeout"] if timeout is None else timeout
    if not section.is_complete:
        log.error("Cannot publish to %s: section %s has no broker credentials", topic, section.name)
        return False

    client = client_factory("fleet-oneshot-" + uuid.uuid4().hex[:8], section, reconnect=False)
    connected = threading.Event()

    def _on_connect(c, userdata, flags, reason_code, properties=None):
        if reason_code == 0:
            connected.set()
        else:
            log.error("One-shot MQTT connection refused by %s: rc=%s", section.host, reason_code)

    client.on_connect = _on_connect
    deadline = time.monotonic() + timeout
    try:
        client.connect_async(section.host, CONFIG["mqtt_port"], keepalive=CONFIG["mqtt_keepalive"])
        client.loop_start()
        if not connected.wait(timeout):
            log.error("MQTT connection timeout publishing to %s", topic)
            return False
        info = client.publish(topic, payload, qos=0)
        if info.rc != 0:
            log.error("MQTT publish to %s failed: rc=%s", topic, info.rc)
            return False
        info.wait_for_publish(timeout=max(0.1, deadline - time.monotonic()))
        if not info.is_published():
            log.error("Publish timeout on %s", topic)
            return False
        log.info("Published (one-shot) %s → %s", payload, topic)
        log_traffic("TX", topic, payload)
        return True
    except Exception as e:
        log.error("One-shot publish to %s failed: %s", topic, e)
        return False
    finally:
        try:
            client.disconnect()
        finally:
            client.loop_stop()


# ── long-lived connections ───────────────────────────────────────────────

class SectionConnection:
    """One broker connection for one (robot, section)."""

    def __init__(self, robot_id: str, robot_name: str, section: Section,
                 on_message: Callable, client_factory: Callable = make_client):
        self.robot_id = robot_id
        self.robot_name = robot_name
        self.section = section
        self.section_name = section.name
        self.client_id = f"robot-{robot_id}-{section.name}-{int(time.time() * 1000)}"
        self._on_message_cb = on_message
        self._client = client_factory(self.client_id, section)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message
        self._lock = threading.Lock()
        self.connected = False
        self.error: Optional[str] = None
        self.last_seen: Optional[str] = None

    @property
    def key(self) -> tuple:
        return self.robot_id, self.section_name

    @property
    def topic(self) -> str:
        return self.section.topic_subscribe

    def start(self):
        log.info("Connecting to MQTT for %s - %s (%s)", self.robot_name, self.section_name,
                 self.section.host)
        try:
            self._client.connect_async(self.section.host, CONFIG["mqtt_port"],
                                       keepalive=CONFIG["mqtt_keepalive"])
            self._client.loop_start()
        except Exception as e:
            self.error = str(e)
            log.error("MQTT connect failed for %s - %s: %s", self.robot_name, self.section_name, e)

    def stop(self):
        try:
            self._client.disconnect()
        except Exception as e:
            log.debug("Disconnect error for %s - %s: %s", self.robot_name, self.section_name, e)
        finally:
            self._client.loop_stop()
        with self._lock:
            self.connected = False

    def _touch(self):
        self.last_seen = datetime.now(timezone.utc).isoformat()

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code == 0:
            log.info("MQTT connected to: %s - %s", self.robot_name, self.section_name)
            with self._lock:
                self.connected = True
                self.error = None
                self._touch()
            if self.topic:
                client.subscribe(self.topic, qos=0)
                log.info("Subscribed to %s for %s - %s", self.topic, self.robot_name,
                         self.section_name)
        else:
            log.error("MQTT connection refused for %s - %s: rc=%s",
                      self.robot_name, self.section_name, reason_code)
            with self._lock:
                self.connected = False
                self.error = str(reason_code)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        with self._lock:
            self.connected = False
        log.warning("MQTT disconnected from %s - %s (rc=%s), retrying every %ss",
                    self.robot_name, self.section_name, reason_code,
                    CONFIG["mqtt_reconnect_period"])

    def _on_message(self, client, userdata, msg):
        try:
            payload = msg.payload.decode("utf-8", errors="replace")
            with self._lock:
                self._touch()
            log_traffic("RX", msg.topic, payload)
            self._on_message_cb(self, msg.topic, payload)
        except Exception as e:
            log.error("Error processing MQTT message on %s: %s", msg.topic, e)

    def publish(self, topic: str, payload: str) -> bool:
        if not self.connected:
            return False
        result = self._client.publish(topic, payload, qos=0)
        if result.rc != 0:
            log.error("MQTT publish failed: rc=%s", result.rc)
            return False
        log_traffic("TX", topic, payload)
        return True

    @property
    def state(self) -> str:
        if self.connected:
            return STATE_CONNECTED
        if self.error:
            return STATE_DISCONNECTED
        return STATE_CONNECTING

    def as_dict(self) -> dict:
        with self._lock:
            return {
                "robotId": self.robot_id,
                "robotName": self.robot_name,
                "sectionName": self.section_name,
                "host": self.section.host,
                "topicSubscribe": self.section.topic_subscribe,
                "topicMain": self.section.topic_main,
                "connected": self.connected,
                "state": self.state,
                "error": self.error,
                "lastSeen": self.last_seen,
            }


class ConnectionRegistry:
    """Owns every long-lived Section connection."""

    def __init__(self, snapshot, handler: Callable = None,
                 client_factory: Callable = make_client,
                 reconnect_delay: float = None, reconnect_all_delay: float = None):
        self._snapshot = snapshot
        self.handler = handler
        self._client_factory = client_factory
        self._reconnect_delay = (CONFIG["reconnect_delay"]
                                 if reconnect_delay is None else reconnect_delay)
        self._reconnect_all_delay = (CONFIG["reconnect_all_delay"]
                                     if reconnect_all_delay is None else reconnect_all_delay)
        self._lock = threading.RLock()
        self._connections: dict = {}   # (robot_id, section) → SectionConnection
        self._initialized = False
        self._timers: set = set()

        # ── periodic refresh ──
        self._refresh_thread: Optional[threading.Thread] = None
        self._stop_refresh = threading.Event()
        self._last_status_request = time.monotonic()

    # ── lifecycle ────────────────────────────────────────────────────────

    def _dispatch(self, conn: SectionConnection, topic: str, payload: str):
        if self.handler is None:
            log.debug("No handler for message on %s", topic)
            return
        self.handler(conn, topic, payload)

    def _open(self, robot, section: Section) -> SectionConnection:
        conn = SectionConnection(robot.id, robot.name, section, self._dispatch,
                                 client_factory=self._client_factory)
        with self._lock:
            previous = self._connections.get(conn.key)
            self._connections[conn.key] = conn
        if previous is not None:
            previous.stop()
        conn.start()
        return conn

    def connect_all(self) -> int:
        """Open a connection for every complete Section. No-op once initialized."""
        with self._lock:
            if self._initialized:
                return len(self._connections)
            try:
                self._snapshot.refresh()
            except Exception as e:
                log.error("Failed to fetch robots for MQTT connections: %s", e)
                return 0

            resolver = self._snapshot.resolver()
            for robot in resolver.robots:
                for section in robot.sections.values():
                    if not section.is_complete:
                        log.debug("Skipping incomplete section %s/%s", robot.id, section.name)
                        continue
                    try:
                        self._open(robot, section)
                    except Exception as e:
                        log.error("Failed to create MQTT connection for %s - %s: %s",
                                  robot.name, section.name, e)
            self._initialized = True
            log.info("Opened %d MQTT connections", len(self._connections))
            self._start_refresh_thread()
            return len(self._connections)

    def reconnect(self, robot_id, section_name: str) -> bool:
        """Tear down one connection and reopen it after a short delay."""
        key = (str(robot_id), section_name)
        with self._lock:
            conn = self._connections.pop(key, None)
        if conn is None:
            log.warning("No connection for %s-%s to reconnect", robot_id, section_name)
            return False
        log.info("Reconnecting %s-%s...", robot_id, section_name)
        conn.stop()

        def _reopen():
            try:
                robot = self._snapshot.resolver().find_robot(robot_id)
                section = robot.sections.get(section_name) if robot else None
                if section is None or not section.is_complete:
                    log.warning("Section %s-%s no longer eligible", robot_id, section_name)
                    return
                with self._lock:
                    if not self._initialized:
                        log.info("Registry closed; dropping reconnect of %s-%s",
                                 robot_id, section_name)
                        return
                    self._open(robot, section)
            except Exception as e:
                log.error("Reconnect of %s-%s failed: %s", robot_id, section_name, e)

        self._schedule(self._reconnect_delay, _reopen, f"mqtt-reconnect-{robot_id}-{section_name}")
        return True

    def reconnect_all(self):
        """Tear everything down and run ``connect_all`` again after a delay."""
        log.info("Reconnecting all MQTT connections...")
        self.close()

        def _reconnect():
            try:
                self.connect_all()
            except Exception as e:
                log.error("Reconnect-all failed: %s", e)

        self._schedule(self._reconnect_all_delay, _reconnect, "mqtt-reconnect-all")

    def close(self):
        """Stop every connection and forget them."""
        self._stop_refresh.set()
        if self._refresh_thread:
            self._refresh_thread.join(timeout=2)
            self._refresh_thread = None
        with self._lock:
            conns = list(self._connections.values())
            self._connections.clear()
            self._initialized = False
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        for conn in conns:
            try:
                conn.stop()
            except Exception as e:
                log.error("Error ending client %s: %s", conn.client_id, e)

    def _schedule(self, delay: float, fn: Callable, name: str):
        if delay <= 0:
            fn()
            return

        def _run():
            with self._lock:
                self._timers.discard(timer)
            fn()

        timer = threading.Timer(delay, _run)
        timer.name = name
        timer.daemon = True
        with self._lock:
            self._timers.add(timer)
        timer.start()

    # ── public API ───────────────────────────────────────────────────────

    def get(self, robot_id, section_name: str) -> Optional[SectionConnection]:
        with self._lock:
            return self._connections.get((str(robot_id), section_name))

    def publish(self, robot_id, section_name: str, topic: str, payload: str) -> bool:
        """Publish through the pair's live client. False (never raises) if none."""
        conn = self.get(robot_id, section_name)
        if conn is None or not conn.connected:
            log.error("Cannot publish: no connected client for %s-%s", robot_id, section_name)
            return False
        try:
            ok = conn.publish(topic, payload)
        except Exception as e:
            log.error("Publish failed for %s-%s: %s", robot_id, section_name, e)
            return False
        if ok:
            log.info("Published to %s-%s: %s -> %s", robot_id, section_name, topic, payload)
        return ok

    def status(self, robot_id, section_name: str) -> str:
        conn = self.get(robot_id, section_name)
        if conn is None:
            return STATE_DISCONNECTED
        return conn.state

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    @property
    def connected_count(self) -> int:
        with self._lock:
            return sum(1 for c in self._connections.values() if c.connected)

    def connections(self) -> list:
        with self._lock:
            conns = list(self._connections.values())
        return [c.as_dict() for c in conns]

    def request_status(self, robot_id=None) -> int:
        """Publish a status request on the main topic of connected Sections."""
        with self._lock:
            conns = [c for c in self._connections.values()
                     if robot_id is None or c.robot_id == str(robot_id)]
        sent = 0
        for conn in conns:
            if conn.section.topic_main and self.publish(conn.robot_id, conn.section_name,
                                                        conn.section.topic_main, STATUS_REQUEST):
                sent += 1
        return sent

    # ── periodic refresh ─────────────────────────────────────────────────

    def _refresh_tick(self):
        try:
            self._snapshot.refresh()
        except Exception as e:
            log.warning("Periodic fleet refresh failed: %s", e)

        interval = CONFIG["status_request_interval"]
        if interval and time.monotonic() - self._last_status_request >= interval:
            self._last_status_request = time.monotonic()
            sent = self.request_status()
            log.info("Periodic status request sent to %d sections", sent)

    def _start_refresh_thread(self):
        """Background thread: refresh the fleet snapshot, request status daily."""
        interval = CONFIG["snapshot_refresh_interval"]
        if not interval or (self._refresh_thread and self._refresh_thread.is_alive()):
            return
        stop = threading.Event()
        self._stop_refresh = stop

        def refresh_loop():
            log.info("Fleet refresh thread started (%ss)", interval)
            while not stop.wait(interval):
                self._refresh_tick()
            log.info("Fleet refresh thread stopped")

        self._refresh_thread = threading.Thread(target=refresh_loop, daemon=True,
                                                name="fleet-refresh")
        self._refresh_thread.start()

    def summary(self) -> dict:
        return {
            "initialized": self._initialized,
            "connectionCount": self.connection_count,
            "connectedCount": self.connected_count,
        }

    def __repr__(self):
        return "ConnectionRegistry(%s)" % json.dumps(self.summary())
