"""
Projection of classified telemetry onto the backend robot record.

Always read-before-write: the robot is re-fetched, only the fields the
event carries are merged into its Section, and the whole record is written
back. When that combined write fails, each field is written on its own.
"""

import copy
import logging
import time
from typing import Optional

from fleetbridge.config import CONFIG

log = logging.getLogger("fleet-bridge.projection")

# event field → backend Section key
FIELD_KEYS = {
    "voltage": "Voltage",
    "mode": "Status",
    "cycles": "Cycles",
}


def merge_section(record: dict, section_name: str, changes: dict) -> dict:
    """Copy of *record* with *changes* (backend keys) applied to one Section."""
    merged = copy.deepcopy(record)
    sections = merged.setdefault("Sections", {})
    section = dict(sections.get(section_name) or {})
    section.update(changes)
    sections[section_name] = section
    return merged


class StateProjector:
    """Read-modify-write of Section telemetry through the backend."""

    def __init__(self, api, snapshot=None, field_write_delay: float = None,
                 half_cycle_step: float = None, sleep=time.sleep):
        self._api = api
        self._snapshot = snapshot
        self._delay = CONFIG["field_write_delay"] if field_write_delay is None else field_write_delay
        self._step = CONFIG["half_cycle_step"] if half_cycle_step is None else half_cycle_step
        self._sleep = sleep

    def _changes(self, fields: dict) -> dict:
        return {FIELD_KEYS[k]: v for k, v in fields.items() if k in FIELD_KEYS and v is not None}

    def _remember(self, record: dict):
        if self._snapshot is not None:
            self._snapshot.replace_robot(record)

    def project(self, robot_id, section_name: str, fields: dict) -> Optional[dict]:
        """Write *fields* (voltage/mode/cycles) into the Section.

        Returns the updated Section dict, or None if nothing could be
        written. Never raises.
        """
        changes = self._changes(fields)
        if not changes:
            return None
        try:
            current = self._api.get_robot(robot_id)
            updated = merge_section(current, section_name, changes)
            stored = self._api.update_robot(robot_id, updated)
            log.info("Robot %s/%s updated: %s", robot_id, section_name, changes)
            self._remember(stored)
            return (stored.get("Sections") or {}).get(section_name, updated["Sections"][section_name])
        except Exception as e:
            log.warning("Combined update for robot %s/%s failed (%s); writing fields separately",
                        robot_id, section_name, e)
        return self._project_per_field(robot_id, section_name, changes)

    def _project_per_field(self, robot_id, section_name: str, changes: dict) -> Optional[dict]:
        try:
            record = self._api.get_robot(robot_id)
            for key, value in changes.items():
                self._sleep(self._delay)
                record = merge_section(record, section_name, {key: value})
                stored = self._api.update_robot(robot_id, record)
                if isinstance(stored, dict) and stored.get("Sections"):
                    record = stored
            log.info("Robot %s/%s updated field by field: %s", robot_id, section_name, changes)
            self._remember(record)
            return record["Sections"][section_name]
        except Exception as e:
            log.error("Separate updates for robot %s/%s failed: %s", robot_id, section_name, e)
            return None

    def half_cycle(self, robot_id, section_name: str) -> Optional[tuple]:
        """Add one half-cycle step to the Section's cycle count.

        Returns ``(robot_record, new_cycles)`` or None on failure.
        """
        try:
            try:
                current = self._api.get_robot(robot_id)
            except Exception as e:
                log.error("Failed to fetch robot %s: %s", robot_id, e)
                current = self._snapshot.robot_record(robot_id) if self._snapshot else None

            section = ((current or {}).get("Sections") or {}).get(section_name)
            if section is None:
                log.error("Robot %s or section %s not found", robot_id, section_name)
                return None

            try:
                old = float(section.get("Cycles") or 0)
            except (TypeError, ValueError):
                old = 0.0
            new_cycles = old + self._step
            log.info("Cycles for %s/%s: %s → %s", robot_id, section_name, old, new_cycles)

            updated = merge_section(current, section_name, {"Cycles": new_cycles})
            stored = self._api.update_robot(robot_id, updated)
            self._remember(stored)
            return stored, new_cycles
        except Exception as e:
            log.error("Half cycle update for robot %s/%s failed: %s", robot_id, section_name, e)
            return None
