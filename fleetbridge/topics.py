"""
Topic resolution over a snapshot of the fleet configuration.
"""

import copy
import logging
import threading
from typing import Optional

from fleetbridge.models import Resolution, Robot

log = logging.getLogger("fleet-bridge.topics")


class TopicResolver:
    """Maps wire topics to their owning (robot, section).

    Built from one list of robot records and never mutated; a snapshot
    refresh produces a new resolver.
    """

    def __init__(self, robots: list):
        self.robots = [r if isinstance(r, Robot) else Robot.from_dict(r) for r in robots]
        self._by_subscribe: dict = {}
        for robot in self.robots:
            for name, section in robot.sections.items():
                if section.topic_subscribe and section.topic_subscribe not in self._by_subscribe:
                    self._by_subscribe[section.topic_subscribe] = Resolution(robot, name, section)

    def resolve(self, topic: str) -> Optional[Resolution]:
        """Owner of an inbound (``Topic_subscribe``) topic, or None."""
        return self._by_subscribe.get(topic)

    def main_topic_for(self, subscribe_topic: str) -> str:
        """Companion outbound topic; the input unchanged when nothing matches."""
        found = self.resolve(subscribe_topic)
        if found and found.section.topic_main:
            return found.section.topic_main
        return subscribe_topic

    def find_robot(self, robot_id) -> Optional[Robot]:
        rid = str(robot_id)
        for robot in self.robots:
            if robot.id == rid:
                return robot
        return None

    def button_name_for(self, topic: str, value: str) -> str:
        """Display name of the button that *value* refers to on *topic*.

        Matches a button's name case-insensitively or its command exactly;
        falls back to *value* itself.
        """
        for robot in self.robots:
            for section in robot.sections.values():
                if topic not in (section.topic_main, section.topic_subscribe):
                    continue
                for btn in section.buttons:
                    if btn.name and btn.name.lower() == value.lower():
                        return btn.name
                    if btn.command and btn.command == value:
                        return btn.name
                return value
        return value


class FleetSnapshot:
    """Read-mostly cache of the robot records from the backend.

    Refreshed wholesale, which also re-warms the API client's project and
    user caches; single robots are replaced after a successful write
    so the in-memory view tracks what was persisted.
    """

    def __init__(self, api):
        self._api = api
        self._lock = threading.Lock()
        self._robots: list = []
        self._resolver = TopicResolver([])

    def refresh(self) -> list:
        """Re-fetch everything. Returns the robot records.

        A failed robots fetch keeps the previous robots and re-raises; a
        failed projects/users fetch is logged and does not block the refresh.
        """
        robots = self._api.get_robots()
        try:
            projects = self._api.get_projects(fresh=True)
        except Exception as e:
            log.warning("Could not fetch projects: %s", e)
            projects = []
        try:
            users = self._api.get_users(fresh=True)
        except Exception as e:
            log.warning("Could not fetch users: %s", e)
            users = []

        resolver = TopicResolver(robots)
        with self._lock:
            self._robots = list(robots)
            self._resolver = resolver
        log.info("Fleet snapshot: %d robots, %d projects, %d users",
                 len(robots), len(projects), len(users))
        return list(robots)

    def replace_robot(self, record: dict):
        """Apply a persisted robot record to the snapshot."""
        if not isinstance(record, dict) or record.get("id") is None:
            return
        rid = str(record["id"])
        with self._lock:
            robots = [record if str(r.get("id")) == rid else r for r in self._robots]
            self._robots = robots
            self._resolver = TopicResolver(robots)

    def resolver(self) -> TopicResolver:
        with self._lock:
            return self._resolver

    def robot_record(self, robot_id) -> Optional[dict]:
        rid = str(robot_id)
        with self._lock:
            for r in self._robots:
                if str(r.get("id")) == rid:
                    return copy.deepcopy(r)
        return None

    @property
    def robots(self) -> list:
        with self._lock:
            return copy.deepcopy(self._robots)
