import time

import pytest

from fleetbridge.config import CONFIG
from fleetbridge.models import Section
from fleetbridge.mqtt_client import (
    STATE_CONNECTED,
    STATE_CONNECTING,
    STATE_DISCONNECTED,
    ConnectionRegistry,
    publish_once,
)
from fleetbridge.topics import FleetSnapshot

from conftest import FakeClientFactory, FakeFleetAPI, sample_robots


@pytest.fixture(autouse=True)
def no_refresh_thread(monkeypatch):
    monkeypatch.setitem(CONFIG, "snapshot_refresh_interval", 0)


@pytest.fixture
def factory():
    return FakeClientFactory()


@pytest.fixture
def received():
    return []


@pytest.fixture
def registry(factory, received):
    robots = sample_robots()
    robots.append({
        "id": "3", "RobotName": "Gamma", "projectId": "10",
        "Sections": {"main": {"mqttUrl": "wss://c.example.com:8884/mqtt", "mqttUsername": "g",
                              "mqttPassword": "", "Topic_subscribe": "gamma/out",
                              "Topic_main": "gamma/in"}},
    })
    snapshot = FleetSnapshot(FakeFleetAPI(robots=robots))
    reg = ConnectionRegistry(snapshot, client_factory=factory,
                             reconnect_delay=0, reconnect_all_delay=0)
    reg.handler = lambda conn, topic, payload: received.append((conn.key, topic, payload))
    return reg


def test_connect_all_opens_complete_sections_only(registry, factory):
    assert registry.connect_all() == 3
    assert registry.connection_count == 3
    keys = {(c.section.topic_subscribe, c.connected_to) for c in factory.clients}
    assert keys == {
        ("alpha/main/out", ("broker-a.example.com", 8884, 30)),
        ("alpha/car/out", ("broker-a.example.com", 8884, 30)),
        ("beta/main/out", ("broker-b.example.com", 8884, 30)),
    }
    assert all(c.loop_running for c in factory.clients)


def test_connect_all_is_idempotent(registry, factory):
    registry.connect_all()
    registry.connect_all()
    assert len(factory.clients) == 3


def test_subscribes_only_to_inbound_topic(registry, factory):
    registry.connect_all()
    client = factory.for_topic("alpha/main/out")
    client.simulate_connect()
    assert client.subscriptions == ["alpha/main/out"]


def test_status_and_counts(registry, factory):
    registry.connect_all()
    assert registry.status("1", "main") == STATE_CONNECTING
    assert registry.status("3", "main") == STATE_DISCONNECTED
    assert registry.connected_count == 0

    factory.for_topic("alpha/main/out").simulate_connect()
    assert registry.status(1, "main") == STATE_CONNECTED
    assert registry.connected_count == 1

    factory.for_topic("alpha/main/out").simulate_disconnect()
    assert registry.status("1", "main") == STATE_CONNECTING
    assert registry.connected_count == 0


def test_refused_connection_records_error(registry, factory):
    registry.connect_all()
    factory.for_topic("beta/main/out").simulate_connect(rc=5)
    info = registry.get("2", "main").as_dict()
    assert info["connected"] is False
    assert info["error"] == "5"
    assert info["state"] == STATE_DISCONNECTED

    factory.for_topic("beta/main/out").simulate_connect()
    assert registry.status("2", "main") == STATE_CONNECTED
    assert registry.get("2", "main").error is None


def test_publish_requires_connected_client(registry, factory):
    registry.connect_all()
    assert not registry.publish("1", "main", "alpha/main/in", "Start")
    assert not registry.publish("9", "main", "x", "Start")

    client = factory.for_topic("alpha/main/out")
    client.simulate_connect()
    assert registry.publish("1", "main", "alpha/main/in", "Start")
    assert client.published == [("alpha/main/in", "Start")]


def test_messages_reach_handler(registry, factory, received):
    registry.connect_all()
    client = factory.for_topic("alpha/car/out")
    client.simulate_connect()
    client.simulate_message("alpha/car/out", "voltage: 12")
    assert received == [(("1", "car"), "alpha/car/out", "voltage: 12")]
    assert registry.get("1", "car").last_seen is not None


def test_handler_errors_do_not_escape(registry, factory):
    def broken(conn, topic, payload):
        raise RuntimeError("boom")

    registry.handler = broken
    registry.connect_all()
    factory.for_topic("alpha/car/out").simulate_message("alpha/car/out", "x")


def test_reconnect_one(registry, factory):
    registry.connect_all()
    old = factory.for_topic("beta/main/out")
    assert registry.reconnect("2", "main")
    assert old.disconnected and not old.loop_running
    new = factory.for_topic("beta/main/out")
    assert new is not old
    assert registry.connection_count == 3
    assert not registry.reconnect("2", "car")


def test_reconnect_all(registry, factory):
    registry.connect_all()
    first = list(factory.clients)
    registry.reconnect_all()
    assert all(c.disconnected for c in first)
    assert len(factory.clients) == 6
    assert registry.initialized
    assert registry.connection_count == 3


def test_close(registry, factory):
    registry.connect_all()
    registry.close()
    assert registry.connection_count == 0
    assert not registry.initialized
    assert all(c.disconnected for c in factory.clients)


def test_request_status_publishes_on_main_topics(registry, factory):
    registry.connect_all()
    for client in factory.clients:
        client.simulate_connect()
    assert registry.request_status("1") == 2
    published = [p for c in factory.clients for p in c.published]
    assert sorted(published) == [("alpha/car/in", "status"), ("alpha/main/in", "status")]


def test_connect_all_backend_down(factory):
    api = FakeFleetAPI()

    def down():
        raise ConnectionError("backend down")

    api.get_robots = down
    reg = ConnectionRegistry(FleetSnapshot(api), client_factory=factory)
    assert reg.connect_all() == 0
    assert not reg.initialized


def _live(factory, topic):
    return [c for c in factory.clients
            if c.section.topic_subscribe == topic and c.loop_running]


def test_reconnect_all_cancels_pending_reconnect(factory):
    reg = ConnectionRegistry(FleetSnapshot(FakeFleetAPI()), client_factory=factory,
                             reconnect_delay=0.1, reconnect_all_delay=0.3)
    reg.connect_all()
    reg.reconnect("1", "main")
    reg.reconnect_all()
    time.sleep(0.6)
    try:
        assert len(_live(factory, "alpha/main/out")) == 1
        assert reg.connection_count == 3
    finally:
        reg.close()


def test_close_drops_pending_reconnect(factory):
    reg = ConnectionRegistry(FleetSnapshot(FakeFleetAPI()), client_factory=factory,
                             reconnect_delay=0.1)
    reg.connect_all()
    reg.reconnect("2", "main")
    reg.close()
    time.sleep(0.3)
    assert _live(factory, "beta/main/out") == []
    assert reg.connection_count == 0


# ── one-shot publish ──

def _section():
    return Section.from_dict("car", sample_robots()[0]["Sections"]["car"])


def test_publish_once_success_always_disconnects():
    factory = FakeClientFactory(auto_connect=True)
    assert publish_once(_section(), "alpha/car/in", "schedule_08_30_1_0_1_0_1_0_0_0",
                        timeout=1, client_factory=factory)
    client = factory.clients[0]
    assert client.published == [("alpha/car/in", "schedule_08_30_1_0_1_0_1_0_0_0")]
    assert client.reconnect is False
    assert client.disconnected and not client.loop_running


def test_publish_once_timeout_returns_false():
    factory = FakeClientFactory(auto_connect=False)
    assert not publish_once(_section(), "alpha/car/in", "status", timeout=0.05,
                            client_factory=factory)
    client = factory.clients[0]
    assert client.published == []
    assert client.disconnected and not client.loop_running


def test_publish_once_needs_credentials():
    factory = FakeClientFactory(auto_connect=True)
    assert not publish_once(Section("car", host="h"), "t", "p", client_factory=factory)
    assert factory.clients == []
