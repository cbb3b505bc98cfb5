"""
The ingestion pipeline and the outbound command helpers.

    broker message → resolve → classify → dedup guard → projection
                   → notification router (persist, feed, toast, email)

``IngestPipeline.handle_message`` is what every registry connection calls
from its paho network thread. It never raises.
"""

import logging
from typing import Iterable, Optional

from fleetbridge.config import CONFIG
from fleetbridge.classifier import classify, unwrap, wants_error_toast
from fleetbridge.commands import (
    STATUS_REQUEST,
    CommandError,
    encode_schedule,
    encode_time_sync,
)
from fleetbridge.dedup import message_key
from fleetbridge.models import (
    KIND_ENVELOPE,
    KIND_HALF_CYCLE,
    KIND_STATUS,
    MAIN_SECTION,
    SEVERITY_ALERT,
    SEVERITY_INFO,
    TROLLEY_SECTION,
    ClassifiedEvent,
    Resolution,
)
from fleetbridge.mqtt_client import publish_once
from fleetbridge.notifier import TOAST_ERROR, TOAST_INFO, TOAST_SUCCESS
from fleetbridge.session import RESTRICTED_ROLE

log = logging.getLogger("fleet-bridge.pipeline")


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _fmt_number(value) -> str:
    """12.0 → "12", 12.5 → "12.5"."""
    try:
        value = float(value)
    except (TypeError, ValueError):
        return str(value)
    return str(int(value)) if value.is_integer() else str(value)


class _Context:
    """Who an inbound event belongs to, with fallbacks for unresolved topics."""

    __slots__ = ("topic", "resolution", "robot_id", "section_name", "robot_name",
                 "project_id", "visible")

    def __init__(self, topic: str, resolution: Optional[Resolution], robot_id=None,
                 section_name: str = None, robot_name: str = None):
        self.topic = topic
        self.resolution = resolution
        if resolution is not None:
            robot_id = resolution.robot.id
            section_name = resolution.section_name
            robot_name = resolution.robot.name or robot_name
            self.project_id = resolution.robot.project_id
        else:
            self.project_id = None
        self.robot_id = str(robot_id) if robot_id is not None else None
        self.section_name = section_name
        self.robot_name = robot_name or topic
        self.visible = False


class IngestPipeline:
    """Owns the per-message flow and the outbound command surface."""

    def __init__(self, snapshot, session, guard, projector, router,
                 registry=None, voltage_threshold: int = None,
                 one_shot_publish=publish_once):
        self._snapshot = snapshot
        self._session = session
        self._guard = guard
        self._projector = projector
        self._router = router
        self._registry = registry
        self._threshold = (CONFIG["voltage_threshold"]
                           if voltage_threshold is None else voltage_threshold)
        self._publish_once = one_shot_publish
        if registry is not None:
            registry.handler = self.on_connection_message

    # ── inbound ──────────────────────────────────────────────────────────

    def on_connection_message(self, conn, topic: str, payload: str):
        """Registry callback: a message arrived on ``conn``'s subscription."""
        self.handle_message(topic, payload, robot_id=conn.robot_id,
                            section_name=conn.section_name, robot_name=conn.robot_name)

    def handle_message(self, topic: str, payload: str, robot_id=None,
                       section_name: str = None, robot_name: str = None
                       ) -> Optional[ClassifiedEvent]:
        """Run one inbound message through the pipeline.

        Returns the classified event when it was admitted, None when it
        was dropped as a duplicate or failed.
        """
        try:
            resolution = self._snapshot.resolver().resolve(topic)
            ctx = _Context(topic, resolution, robot_id, section_name, robot_name)
            role, project_name = self._session.current()
            text = unwrap(payload)
            event = classify(payload, role=role, voltage_threshold=self._threshold)

            if event.kind == KIND_HALF_CYCLE:
                key = f"halfcycle-{ctx.robot_id}-{ctx.section_name}"
                cooldown = self._guard.half_cycle_window
            else:
                key = message_key(topic, text, ctx.robot_id, ctx.section_name)
                cooldown = None
            if not self._guard.begin(key):
                log.debug("Skipping duplicate message on %s", topic)
                return None

            try:
                log.info("MQTT message from %s (%s) [%s]: %s", ctx.robot_name,
                         ctx.section_name, event.kind, text)
                ctx.visible = self._router.should_show(resolution, role, project_name)
                self._dispatch(event, ctx, role)
            finally:
                self._guard.end(key, cooldown)
            return event
        except Exception as e:
            log.error("Error processing MQTT message on %s: %s", topic, e)
            return None

    def _dispatch(self, event: ClassifiedEvent, ctx: _Context, role: Optional[str]):
        if event.kind == KIND_ENVELOPE:
            self._on_envelope(event, ctx)
        elif event.kind == KIND_HALF_CYCLE:
            self._on_half_cycle(ctx)
        elif event.kind == KIND_STATUS:
            self._on_status(event, ctx)
        else:
            self._on_text(event, ctx, role)

    def _save(self, ctx: _Context, message: str, msg_type: str, voltage: int = None):
        notification = self._router.build(
            ctx.topic, message, msg_type, resolution=ctx.resolution,
            robot_id=ctx.robot_id, section_name=ctx.section_name,
            robot_name=ctx.robot_name, voltage=voltage)
        return self._router.publish(notification, ctx.visible)

    # ── structured envelope ──

    def _on_envelope(self, event: ClassifiedEvent, ctx: _Context):
        record = self._save(ctx, event.message, event.severity, voltage=event.voltage)
        if record is None:
            return

        if event.is_alert:
            if not self._guard.claim_danger(ctx.robot_id, ctx.section_name,
                                            voltage=event.voltage, message=event.message):
                return
            self._router.send_alert_emails(
                ctx.project_id,
                f'🚨 Alert from robot "{ctx.robot_name}" ({ctx.section_name}): {event.message}',
                f"Alert: Robot {ctx.robot_name} {event.type}")
            if ctx.visible:
                self._router.toast(TOAST_ERROR, f"🚨 {ctx.robot_name}: {event.message}",
                                   title=f"🚨 {ctx.robot_name}",
                                   description=_truncate(event.message, 100), duration=8000)
        elif ctx.visible:
            self._router.toast(TOAST_INFO, f"ℹ️ {ctx.robot_name} ({event.type}): {event.message}",
                               title=f"ℹ️ {ctx.robot_name} ({event.type})",
                               description=_truncate(event.message, 80))

    # ── half cycle ──

    def _on_half_cycle(self, ctx: _Context):
        if ctx.robot_id is None or ctx.section_name is None:
            log.warning("Half cycle finished on unknown topic %s", ctx.topic)
            return
        result = self._projector.half_cycle(ctx.robot_id, ctx.section_name)
        if result is None:
            return
        stored, new_cycles = result
        name = stored.get("RobotName") or stored.get("robotName") or ctx.robot_name
        msg = f"Half cycle finished for {name}. Cycles: {_fmt_number(new_cycles)}"
        self._save(ctx, msg, SEVERITY_INFO)
        if ctx.visible:
            self._router.toast(TOAST_SUCCESS, msg)

    # ── status fields ──

    def _on_status(self, event: ClassifiedEvent, ctx: _Context):
        if ctx.robot_id is None or ctx.section_name is None:
            log.warning("No matching robot found for topic %s", ctx.topic)
            return

        # A failed projection is logged inside; notifications still go out
        self._projector.project(ctx.robot_id, ctx.section_name, event.fields)

        voltage = event.voltage
        if voltage is not None and voltage < self._threshold:
            self._low_voltage(ctx, voltage)
        else:
            self._status_update(ctx, event)

        if event.mode is not None and ctx.visible:
            toast = f'🔄 Status updated for robot "{ctx.robot_name}" to {event.mode}'
            self._router.toast(TOAST_INFO, toast)

    def _low_voltage(self, ctx: _Context, voltage: int):
        """Alert path: one persisted alert, emails and a danger toast per window."""
        if not self._guard.claim_danger(ctx.robot_id, ctx.section_name, voltage=voltage):
            return
        log.warning("LOW VOLTAGE: %sV on %s (%s)", voltage, ctx.robot_name, ctx.section_name)
        alert = f'⚠️ Danger: Robot "{ctx.robot_name}" voltage is critically low ({voltage}V)!'
        self._save(ctx, alert, SEVERITY_ALERT, voltage=voltage)

        danger = f'⚠️ Danger Alert: Robot "{ctx.robot_name}" voltage is critically low ({voltage}V)!'
        self._router.send_alert_emails(ctx.project_id, danger,
                                       f"Alert: Robot {ctx.robot_name} Low Voltage")
        if ctx.visible:
            self._router.toast(TOAST_ERROR, danger, duration=10000)

    def _status_update(self, ctx: _Context, event: ClassifiedEvent):
        parts = []
        if event.voltage is not None:
            parts.append(f'Voltage updated for robot "{ctx.robot_name}" to {event.voltage}V')
        if event.mode is not None:
            parts.append(f'Status updated for robot "{ctx.robot_name}" to {event.mode}')
        if event.cycles is not None:
            parts.append(f'Cycles updated for robot "{ctx.robot_name}" to '
                         f'{_fmt_number(event.cycles)}')
        if not parts:
            return
        self._save(ctx, "; ".join(parts), SEVERITY_INFO, voltage=event.voltage)
        if event.voltage is not None and ctx.visible:
            self._router.toast(
                TOAST_SUCCESS,
                f'✅ Voltage updated for robot "{ctx.robot_name}" to {event.voltage}V')

    # ── plain text ──

    def _on_text(self, event: ClassifiedEvent, ctx: _Context, role: Optional[str]):
        record = self._save(ctx, event.message, event.severity)
        if record is None or not ctx.visible:
            return
        if role == RESTRICTED_ROLE and "schedule" in event.message.lower():
            log.debug("Skipping schedule toast for restricted viewer")
            return
        if event.is_alert or wants_error_toast(event.message):
            self._router.toast(TOAST_ERROR, f"🚨 {ctx.robot_name}: {event.message}",
                               title=f"🚨 {ctx.robot_name}",
                               description=_truncate(event.message, 100), duration=8000)
        else:
            self._router.toast(TOAST_INFO, f"ℹ️ {ctx.robot_name}: {event.message}",
                               title=f"ℹ️ {ctx.robot_name}",
                               description=_truncate(event.message, 80))

    # ── outbound ─────────────────────────────────────────────────────────

    def _section(self, robot_id, section_name: str):
        robot = self._snapshot.resolver().find_robot(robot_id)
        if robot is None:
            raise CommandError(f"Unknown robot {robot_id}")
        section = robot.sections.get(section_name)
        if section is None or not section.topic_main:
            raise CommandError(f"Robot {robot_id} has no {section_name} section with a main topic")
        return robot, section

    def publish_button(self, robot_id, section_name: str, value: str) -> bool:
        """Publish a button press on the Section's main topic.

        The payload is the button's display name (resolved from ActiveBtns).
        """
        robot, section = self._section(robot_id, section_name)
        resolver = self._snapshot.resolver()
        topic = section.topic_main
        name = resolver.button_name_for(topic, value)

        published = self._registry is not None and self._registry.publish(
            robot.id, section_name, topic, name)
        if not published:
            self._router.toast(TOAST_ERROR, f"Failed to send {name} to {robot.name} ({section_name})",
                               description="No connected client")
            return False

        role, _ = self._session.current()
        if role == RESTRICTED_ROLE and "schedule" in name.lower():
            self._router.toast(TOAST_SUCCESS,
                               f"Schedule command sent successfully to {robot.id}-{section_name}",
                               duration=3000)
        if role != RESTRICTED_ROLE or robot.project_id:
            self._log_outgoing(robot, section_name, topic, f"Button pressed: {name}")
        return True

    def _log_outgoing(self, robot, section_name: str, topic: str, message: str):
        notification = self._router.build(topic, message, SEVERITY_INFO, robot_id=robot.id,
                                          section_name=section_name, robot_name=robot.name)
        notification.direction = "outgoing"
        try:
            self._router.api.post_log(notification.to_record())
        except Exception as e:
            log.error("Failed to save outgoing log: %s", e)

    def request_status(self, robot_id) -> dict:
        """Ask both Sections of a robot to report their status."""
        robot = self._snapshot.resolver().find_robot(robot_id)
        if robot is None:
            raise CommandError(f"Unknown robot {robot_id}")
        results = {}
        for section_name in (MAIN_SECTION, TROLLEY_SECTION):
            section = robot.sections.get(section_name)
            if section is None or not section.topic_main:
                continue
            results[section_name] = bool(self._registry is not None and self._registry.publish(
                robot.id, section_name, section.topic_main, STATUS_REQUEST))
        return results

    def send_schedule(self, robot_id, days: Iterable[str], hour: int = 0, minute: int = 0,
                      section_name: str = TROLLEY_SECTION) -> tuple:
        """Encode and send a schedule with a one-shot client.

        Returns ``(sent, command)``.
        """
        command = encode_schedule(days, hour, minute)
        robot, section = self._section(robot_id, section_name)
        sent = self._publish_once(section, section.topic_main, command)
        if sent:
            self._log_outgoing(robot, section_name, section.topic_main,
                               f"Schedule sent: {command}")
        else:
            self._router.toast(TOAST_ERROR, f"Failed to send schedule to {robot.name}")
        return sent, command

    def sync_time(self, robot_id, now=None) -> dict:
        """Send ``set_time`` to every Section of the robot that has credentials."""
        robot = self._snapshot.resolver().find_robot(robot_id)
        if robot is None:
            raise CommandError(f"Unknown robot {robot_id}")
        command = encode_time_sync(now)
        results = {"command": command, "sent": 0, "errors": 0, "details": []}
        for section_name in (MAIN_SECTION, TROLLEY_SECTION):
            section = robot.sections.get(section_name)
            if section is None or not section.is_complete:
                continue
            ok = self._publish_once(section, section.topic_main, command)
            results["sent" if ok else "errors"] += 1
            results["details"].append({"section": section_name, "topic": section.topic_main,
                                       "ok": ok})
        log.info("Time sync for robot %s: %d sent, %d errors", robot.id,
                 results["sent"], results["errors"])
        return results
