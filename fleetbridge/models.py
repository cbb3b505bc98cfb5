"""
Typed views over the backend's robot records and the pipeline's events.

Backend records stay plain dicts (the read-modify-write path writes them
back whole); these dataclasses are read-only views built from them.
"""

from dataclasses import dataclass, field
from typing import Optional

MAIN_SECTION = "main"
TROLLEY_SECTION = "car"

KIND_ENVELOPE = "structured-envelope"
KIND_HALF_CYCLE = "half-cycle"
KIND_STATUS = "status-fields"
KIND_TEXT = "plain-text"

SEVERITY_INFO = "info"
SEVERITY_ALERT = "alert"


def _first(data: dict, *keys, default=None):
    for key in keys:
        value = data.get(key)
        if value is not None:
            return value
    return default


@dataclass(frozen=True)
class ActiveButton:
    id: Optional[str]
    name: str
    color: Optional[str] = None
    command: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ActiveButton":
        btn_id = _first(data, "id", "Id")
        return cls(
            id=str(btn_id) if btn_id is not None else None,
            name=str(_first(data, "Name", "name", "BtnName", default="")),
            color=_first(data, "Color", "color"),
            command=_first(data, "Command", "command"),
        )


@dataclass(frozen=True)
class Section:
    name: str
    host: str = ""
    username: str = ""
    password: str = ""
    topic_subscribe: str = ""
    topic_main: str = ""
    voltage: Optional[float] = None
    cycles: Optional[float] = None
    status: Optional[str] = None
    buttons: tuple = ()

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "Section":
        data = data or {}
        buttons = data.get("ActiveBtns") or []
        return cls(
            name=name,
            host=broker_host(data.get("mqttUrl") or ""),
            username=data.get("mqttUsername") or "",
            password=data.get("mqttPassword") or "",
            topic_subscribe=data.get("Topic_subscribe") or "",
            topic_main=data.get("Topic_main") or "",
            voltage=_number(data.get("Voltage")),
            cycles=_number(data.get("Cycles")),
            status=data.get("Status"),
            buttons=tuple(ActiveButton.from_dict(b) for b in buttons if isinstance(b, dict)),
        )

    @property
    def is_complete(self) -> bool:
        """A Section needs host, credentials and both topics to get a live connection."""
        return all((self.host, self.username, self.password,
                    self.topic_subscribe, self.topic_main))


@dataclass(frozen=True)
class Robot:
    id: str
    name: str
    project_id: Optional[str] = None
    is_trolley: bool = False
    sections: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "Robot":
        project_id = _first(data, "projectId", "ProjectId")
        sections = data.get("Sections") or {}
        return cls(
            id=str(data.get("id")),
            name=_first(data, "RobotName", "robotName", default="") or "",
            project_id=str(project_id) if project_id not in (None, "") else None,
            is_trolley=bool(_first(data, "isTrolley", default=False)),
            sections={
                name: Section.from_dict(name, sec)
                for name, sec in sections.items() if isinstance(sec, dict)
            },
        )


@dataclass(frozen=True)
class Resolution:
    """Owner of a wire topic: the robot, the section name and the section."""
    robot: Robot
    section_name: str
    section: Section


@dataclass(frozen=True)
class ClassifiedEvent:
    kind: str
    message: str
    severity: str = SEVERITY_INFO
    type: str = SEVERITY_INFO
    voltage: Optional[int] = None
    mode: Optional[str] = None
    cycles: Optional[float] = None

    @property
    def fields(self) -> dict:
        """Status fields present on this event."""
        found = {}
        if self.voltage is not None:
            found["voltage"] = self.voltage
        if self.mode is not None:
            found["mode"] = self.mode
        if self.cycles is not None:
            found["cycles"] = self.cycles
        return found

    @property
    def is_alert(self) -> bool:
        return self.severity == SEVERITY_ALERT


@dataclass
class Notification:
    topic_main: str
    message: str
    type: str
    date: str
    time: str
    robot_id: Optional[str] = None
    robot_name: Optional[str] = None
    section_name: Optional[str] = None
    voltage: Optional[int] = None
    direction: Optional[str] = None

    def to_record(self) -> dict:
        """Body posted to the notifications and logs endpoints."""
        record = {
            "topic_main": self.topic_main,
            "message": self.message,
            "type": self.type,
            "date": self.date,
            "time": self.time,
            "RobotId": self.robot_id,
            "robotName": self.robot_name,
            "sectionName": self.section_name,
        }
        if self.voltage is not None:
            record["voltage"] = self.voltage
        if self.direction:
            record["direction"] = self.direction
        return record


def broker_host(url: str) -> str:
    """``wss://broker.example.com:8884/mqtt`` -> ``broker.example.com``.

    The port is fixed fleet-wide, so any port in the stored URL is dropped.
    """
    url = url.strip()
    for scheme in ("wss://", "ws://"):
        if url.startswith(scheme):
            url = url[len(scheme):]
            break
    return url.split("/")[0].split(":")[0]


def _number(value) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
