"""
Notification routing: visibility, toasts, emails, feed and persistence.
"""

import logging
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Optional

from fleetbridge.config import CONFIG
from fleetbridge.classifier import is_alert_text
from fleetbridge.models import Notification, Resolution, SEVERITY_ALERT
from fleetbridge.session import RESTRICTED_ROLE

log = logging.getLogger("fleet-bridge.notifier")

TOAST_SUCCESS = "success"
TOAST_INFO = "info"
TOAST_ERROR = "error"


def _norm(name) -> str:
    return str(name or "").strip().lower()


def _project_name(project: dict) -> str:
    return project.get("ProjectName") or project.get("projectName") or ""


def _project_id(project: dict):
    pid = project.get("id")
    return pid if pid is not None else project.get("projectId")


class NotificationFeed:
    """Newest-first, bounded list of notifications shown to the viewer."""

    def __init__(self, limit: int = None):
        self._limit = limit or CONFIG["feed_limit"]
        self._items: list = []
        self._lock = threading.Lock()

    @staticmethod
    def _same(a: dict, b: dict) -> bool:
        return (a.get("RobotId") == b.get("RobotId")
                and a.get("sectionName") == b.get("sectionName")
                and a.get("topic_main") == b.get("topic_main")
                and a.get("message") == b.get("message")
                and abs(a.get("timestamp", 0) - b.get("timestamp", 0)) < 1000)

    def add(self, entry: dict) -> bool:
        """Insert at the head unless an equivalent entry is already there."""
        with self._lock:
            if any(self._same(existing, entry) for existing in self._items):
                log.debug("Skipping duplicate notification in feed")
                return False
            self._items.insert(0, entry)
            del self._items[self._limit:]
            return True

    def items(self, limit: int = None) -> list:
        with self._lock:
            return list(self._items[:limit] if limit else self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class ToastFeed:
    """Transient user-facing messages, newest last."""

    def __init__(self, limit: int = None):
        self._items = deque(maxlen=limit or CONFIG["toast_limit"])
        self._lock = threading.Lock()

    def push(self, toast: dict):
        with self._lock:
            self._items.append(toast)

    def items(self) -> list:
        with self._lock:
            return list(self._items)

    def clear(self):
        with self._lock:
            self._items.clear()


class NotificationRouter:
    """Decides who sees an event and fans out its side effects."""

    def __init__(self, api, session, guard, feed: NotificationFeed = None,
                 toasts: ToastFeed = None, now: Callable[[], datetime] = None):
        self._api = api
        self._session = session
        self._guard = guard
        self.feed = feed or NotificationFeed()
        self.toasts = toasts or ToastFeed()
        self._now = now or (lambda: datetime.now(timezone.utc))

    @property
    def api(self):
        return self._api

    # ── visibility ───────────────────────────────────────────────────────

    def visible(self, resolution: Optional[Resolution]) -> bool:
        """``should_show`` for the current viewer session."""
        role, project_name = self._session.current()
        return self.should_show(resolution, role, project_name)

    def should_show(self, resolution: Optional[Resolution], role: Optional[str],
                    project_name: Optional[str]) -> bool:
        """Privileged viewers see everything; restricted viewers only their
        project's robots. Any missing link means not shown."""
        if role != RESTRICTED_ROLE:
            return True
        if resolution is None or resolution.robot is None:
            log.debug("No robot info for visibility check")
            return False
        robot_project_id = resolution.robot.project_id
        if not robot_project_id or not _norm(project_name):
            return False
        try:
            projects = self._api.get_projects()
        except Exception as e:
            log.error("Error fetching projects for visibility check: %s", e)
            return False
        wanted = _norm(project_name)
        for project in projects:
            if _norm(_project_name(project)) == wanted:
                return str(_project_id(project)) == str(robot_project_id)
        log.debug("No project matches viewer project %r", project_name)
        return False

    # ── toasts ───────────────────────────────────────────────────────────

    def toast(self, level: str, text: str, title: str = None,
              description: str = None, duration: int = 5000) -> bool:
        """Show a toast once per toast window. *text* is its fingerprint."""
        if not self._guard.claim_toast(text):
            return False
        self.toasts.push({
            "level": level,
            "title": title or text,
            "description": description,
            "duration": duration,
            "text": text,
            "timestamp": int(time.time() * 1000),
        })
        log.info("Toast [%s] %s", level, text)
        return True

    # ── email ────────────────────────────────────────────────────────────

    def project_recipients(self, project_id) -> list:
        """E-mail addresses of users whose project matches the robot's."""
        if not project_id:
            return []
        project = next((p for p in self._api.get_projects()
                        if str(_project_id(p)) == str(project_id)
                        or str(p.get("projectId")) == str(project_id)), None)
        if project is None:
            log.info("Project %s not found for email sending", project_id)
            return []
        name = _norm(_project_name(project))
        emails = []
        for user in self._api.get_users():
            if name and _norm(user.get("ProjectName") or user.get("projectName")) == name:
                email = user.get("Email") or user.get("email")
                if email:
                    emails.append(email)
        return emails

    def send_alert_emails(self, project_id, message: str, subject: str) -> int:
        """One email per project user; a failed send does not stop the rest."""
        try:
            recipients = self.project_recipients(project_id)
        except Exception as e:
            log.error("Could not resolve email recipients for project %s: %s", project_id, e)
            return 0
        sent = 0
        for email in recipients:
            try:
                self._api.send_email(email, message, subject)
                sent += 1
            except Exception as e:
                log.error("Failed to send email to %s: %s", email, e)
        return sent

    # ── persistence + feed ───────────────────────────────────────────────

    def build(self, topic: str, message: str, msg_type: str,
              resolution: Optional[Resolution] = None, robot_id=None,
              section_name: str = None, robot_name: str = None,
              voltage: int = None) -> Notification:
        now = self._now()
        if resolution is not None:
            topic_main = resolution.section.topic_main or topic
            robot_id = robot_id or resolution.robot.id
            robot_name = robot_name or resolution.robot.name
            section_name = section_name or resolution.section_name
        else:
            topic_main = topic
        return Notification(
            topic_main=topic_main,
            message=message,
            type=msg_type,
            date=now.strftime("%Y-%m-%d"),
            time=now.strftime("%H:%M:%S"),
            robot_id=str(robot_id) if robot_id is not None else None,
            robot_name=robot_name or topic,
            section_name=section_name,
            voltage=voltage,
        )

    def publish(self, notification: Notification, visible: bool) -> Optional[dict]:
        """Persist *notification* once and, if *visible*, add it to the feed.

        Returns the persisted record, or None if it was a duplicate or the
        notifications write failed.
        """
        record = notification.to_record()
        save_key = "save-{}-{}-{}-{}-{}-{}".format(
            record["RobotId"], record["sectionName"], record["topic_main"],
            record["message"], record["date"], record["time"])
        if not self._guard.processed.claim(save_key):
            log.debug("Skipping duplicate notification save")
            return None

        try:
            response = self._api.post_notification(record)
        except Exception as e:
            log.error("Failed to save notification: %s", e)
            return None
        log.info("Notification saved (%s) for %s/%s: %s", record["type"],
                 record["RobotId"], record["sectionName"], record["message"])

        try:
            self._api.post_log(record)
        except Exception as e:
            log.warning("Could not save to logs: %s", e)

        if visible:
            self.feed.add(self._feed_entry(record, response))
        return record

    def _feed_entry(self, record: dict, response: dict) -> dict:
        now_ms = int(time.time() * 1000)
        notification_id = (response or {}).get("notificationId") or (response or {}).get("id")
        entry = dict(record)
        entry.update({
            "notificationId": notification_id or f"mqtt-{now_ms}-{uuid.uuid4().hex[:8]}",
            "timestamp": now_ms,
            "isAlert": record["type"] == SEVERITY_ALERT or is_alert_text(record["message"]),
            "isMqtt": True,
            "source": "mqtt",
            "displayMessage": "{} ({}): {}".format(
                record.get("robotName") or "Unknown Robot",
                record.get("sectionName") or "Unknown Section",
                record["message"]),
        })
        return entry
