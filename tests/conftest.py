import copy
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from fleetbridge.dedup import DedupGuard
from fleetbridge.notifier import NotificationRouter
from fleetbridge.pipeline import IngestPipeline
from fleetbridge.projection import StateProjector
from fleetbridge.session import ViewerSession
from fleetbridge.topics import FleetSnapshot


def _section(host, user, sub, main, voltage=20, cycles=3, status="idle", buttons=None):
    return {
        "mqttUrl": f"wss://{host}:8884/mqtt",
        "mqttUsername": user,
        "mqttPassword": user + "-secret",
        "Topic_subscribe": sub,
        "Topic_main": main,
        "Voltage": voltage,
        "Cycles": cycles,
        "Status": status,
        "ActiveBtns": buttons or [],
    }


def sample_robots():
    return [
        {
            "id": "1",
            "RobotName": "Alpha",
            "projectId": "10",
            "isTrolley": True,
            "Sections": {
                "main": _section("broker-a.example.com", "alpha", "alpha/main/out", "alpha/main/in",
                                 buttons=[{"id": 1, "Name": "Start", "Command": "start_cmd"},
                                          {"id": 2, "Name": "Schedule Now"}]),
                "car": _section("broker-a.example.com", "alpha-car", "alpha/car/out", "alpha/car/in",
                                cycles=1),
            },
        },
        {
            "id": "2",
            "RobotName": "Beta",
            "projectId": "20",
            "isTrolley": False,
            "Sections": {
                "main": _section("broker-b.example.com", "beta", "beta/main/out", "beta/main/in",
                                 voltage=24, cycles=8),
            },
        },
    ]


def sample_projects():
    return [
        {"id": "10", "ProjectName": "North Site"},
        {"id": "20", "ProjectName": "South Site"},
    ]


def sample_users():
    return [
        {"Email": "ops@north.example", "ProjectName": "north site"},
        {"Email": "lead@north.example", "ProjectName": "North Site"},
        {"Email": "crew@south.example", "ProjectName": "South Site"},
        {"Email": "", "ProjectName": "North Site"},
    ]


class FakeFleetAPI:
    """In-memory stand-in for FleetAPI that records every write."""

    def __init__(self, robots=None, projects=None, users=None):
        self.robots = {r["id"]: r for r in copy.deepcopy(robots or sample_robots())}
        self.projects = projects if projects is not None else sample_projects()
        self.users = users if users is not None else sample_users()
        self.updates = []
        self.notifications = []
        self.logs = []
        self.emails = []
        self.fail_updates = 0
        self.fail_get_robot = False
        self.fail_projects = False
        self.fail_notifications = False
        self.fail_logs = False
        self.bad_emails = set()

    def get_robots(self):
        return copy.deepcopy(list(self.robots.values()))

    def get_robot(self, robot_id):
        if self.fail_get_robot:
            raise ConnectionError("backend unreachable")
        robot = self.robots.get(str(robot_id))
        if robot is None:
            raise HTTPException(status_code=404, detail=f"Robot {robot_id} not found")
        return copy.deepcopy(robot)

    def update_robot(self, robot_id, record):
        if self.fail_updates:
            self.fail_updates -= 1
            raise HTTPException(status_code=500, detail="update failed")
        stored = copy.deepcopy(record)
        self.robots[str(robot_id)] = stored
        self.updates.append(copy.deepcopy(stored))
        return copy.deepcopy(stored)

    def get_projects(self, fresh=False):
        if self.fail_projects:
            raise ConnectionError("projects unavailable")
        return list(self.projects)

    def get_users(self, fresh=False):
        return list(self.users)

    def post_notification(self, record):
        if self.fail_notifications:
            raise HTTPException(status_code=500, detail="notifications down")
        self.notifications.append(dict(record))
        return {"id": len(self.notifications)}

    def post_log(self, record):
        if self.fail_logs:
            raise HTTPException(status_code=500, detail="logs down")
        self.logs.append(dict(record))
        return {}

    def send_email(self, email, message, subject):
        if email in self.bad_emails:
            raise HTTPException(status_code=500, detail="smtp error")
        self.emails.append({"email": email, "message": message, "subject": subject})
        return {}


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeInfo:
    def __init__(self, rc=0, published=True):
        self.rc = rc
        self._published = published

    def wait_for_publish(self, timeout=None):
        return None

    def is_published(self):
        return self._published


class FakeMessage:
    def __init__(self, topic, payload):
        self.topic = topic
        self.payload = payload.encode("utf-8") if isinstance(payload, str) else payload


class FakeMQTTClient:
    """Mimics the parts of paho's Client the bridge touches."""

    def __init__(self, client_id, section, reconnect=True, auto_connect=False):
        self.client_id = client_id
        self.section = section
        self.reconnect = reconnect
        self.auto_connect = auto_connect
        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None
        self.connected_to = None
        self.subscriptions = []
        self.published = []
        self.loop_running = False
        self.disconnected = False

    def connect_async(self, host, port, keepalive=60):
        self.connected_to = (host, port, keepalive)

    def loop_start(self):
        self.loop_running = True
        if self.auto_connect and self.on_connect:
            self.on_connect(self, None, {}, 0, None)

    def loop_stop(self):
        self.loop_running = False

    def disconnect(self):
        self.disconnected = True

    def subscribe(self, topic, qos=0):
        self.subscriptions.append(topic)

    def publish(self, topic, payload, qos=0):
        self.published.append((topic, payload))
        return FakeInfo()

    # test helpers

    def simulate_connect(self, rc=0):
        self.on_connect(self, None, {}, rc, None)

    def simulate_disconnect(self, rc=7):
        self.on_disconnect(self, None, {}, rc, None)

    def simulate_message(self, topic, payload):
        self.on_message(self, None, FakeMessage(topic, payload))


class FakeClientFactory:
    def __init__(self, auto_connect=False):
        self.auto_connect = auto_connect
        self.clients = []

    def __call__(self, client_id, section, reconnect=True):
        client = FakeMQTTClient(client_id, section, reconnect=reconnect,
                                auto_connect=self.auto_connect)
        self.clients.append(client)
        return client

    def for_topic(self, topic):
        """Newest client whose section subscribes to *topic*."""
        for client in reversed(self.clients):
            if client.section.topic_subscribe == topic:
                return client
        return None


FIXED_NOW = datetime(2026, 3, 14, 9, 26, 53, tzinfo=timezone.utc)


@pytest.fixture
def api():
    return FakeFleetAPI()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def snapshot(api):
    snap = FleetSnapshot(api)
    snap.refresh()
    return snap


@pytest.fixture
def make_bridge(api, clock, snapshot):
    """Build the pipeline around the fake backend for a given viewer."""

    def _make(role="admin", project_name="", registry=None, one_shot=None):
        session = ViewerSession(role, project_name)
        guard = DedupGuard(message_window=3, toast_window=5, danger_window=30,
                           half_cycle_window=5, clock=clock)
        projector = StateProjector(api, snapshot, field_write_delay=0, sleep=lambda s: None)
        router = NotificationRouter(api, session, guard, now=lambda: FIXED_NOW)
        kwargs = {"registry": registry}
        if one_shot is not None:
            kwargs["one_shot_publish"] = one_shot
        pipeline = IngestPipeline(snapshot, session, guard, projector, router,
                                  voltage_threshold=15, **kwargs)
        return SimpleNamespace(api=api, snapshot=snapshot, session=session, guard=guard,
                               projector=projector, router=router, pipeline=pipeline,
                               clock=clock)

    return _make
