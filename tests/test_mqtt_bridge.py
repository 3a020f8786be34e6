"""Tests for the MQTT bridge command handling and publishing."""

from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from app_budget_enforcer.config import AgentConfig
from app_budget_enforcer.mqtt_bridge import MqttBridge, parse_minutes, parse_packages


class FakeClient:
    def __init__(self):
        self.published = []
        self.subscribed = []

    def publish(self, topic, payload=None, retain=False, qos=0):
        self.published.append((topic, payload, retain))

    def subscribe(self, topic):
        self.subscribed.append(topic)


def _message(topic, payload, retain=False):
    return SimpleNamespace(topic=topic, payload=payload.encode("utf-8"), retain=retain)


@pytest.fixture
def config():
    return AgentConfig.from_dict({"device_id": "mac1", "mqtt_host": "broker.local"})


@pytest.fixture
def bridge(config, controls):
    bridge = MqttBridge(config, controls)
    bridge._client = FakeClient()
    controls.notifier.register(bridge.publish_remaining)
    return bridge


class TestParsing:
    @pytest.mark.parametrize("payload,expected", [("30", 30), (" 45.0 ", 45), ("0", 0)])
    def test_minutes(self, payload, expected):
        assert parse_minutes(payload) == expected

    @pytest.mark.parametrize("payload", ["-5", "2.5", "lots", ""])
    def test_bad_minutes(self, payload):
        assert parse_minutes(payload) is None

    def test_packages_json_and_csv(self):
        assert parse_packages('["a", "b"]') == ["a", "b"]
        assert parse_packages("a, b,,") == ["a", "b"]
        assert parse_packages("") == []
        assert parse_packages("[1, 2]") is None
        assert parse_packages("[oops") is None


class TestCommands:
    def test_set_budget_publishes_remaining(self, bridge, config, controls):
        bridge._on_message(None, None, _message(config.budget_set_topic, "60"))
        assert controls.get_remaining_minutes() == 60
        assert (config.remaining_topic, "60", True) in bridge._client.published

    def test_add_budget(self, bridge, config, controls):
        controls.set_remaining_minutes(10)
        bridge._on_message(None, None, _message(config.budget_add_topic, "15"))
        assert controls.get_remaining_minutes() == 25

    def test_invalid_budget_is_ignored(self, bridge, config, controls):
        controls.set_remaining_minutes(10)
        bridge._on_message(None, None, _message(config.budget_set_topic, "-3"))
        assert controls.get_remaining_minutes() == 10

    def test_retained_command_is_ignored(self, bridge, config, controls):
        bridge._on_message(None, None, _message(config.budget_set_topic, "90", retain=True))
        assert controls.get_remaining_minutes() == 0

    def test_set_watched(self, bridge, config, controls):
        bridge._on_message(None, None, _message(config.watched_set_topic, '["com.example.game"]'))
        assert controls.status()["watched_packages"] == ["com.example.game"]
        assert (config.watched_state_topic, '["com.example.game"]', True) in bridge._client.published


class TestConnect:
    def test_on_connect_subscribes_and_announces(self, bridge, config, controls):
        controls.set_remaining_minutes(12)
        bridge._client.published.clear()
        bridge._on_connect(bridge._client, None, {}, 0)
        assert bridge.connected
        assert set(bridge._client.subscribed) == {
            config.budget_set_topic,
            config.budget_add_topic,
            config.watched_set_topic,
        }
        topics = [topic for topic, _, _ in bridge._client.published]
        assert "homeassistant/sensor/mac1_app_budget_remaining/config" in topics
        assert "homeassistant/number/mac1_app_budget_budget/config" in topics
        assert (config.remaining_topic, "12", True) in bridge._client.published

    def test_failed_connect_stays_offline(self, bridge):
        bridge._on_connect(bridge._client, None, {}, 5)
        assert not bridge.connected
        assert bridge._client.subscribed == []

    def test_status_heartbeat(self, bridge, config, controls):
        controls.set_remaining_minutes(7)
        bridge.status_extra = lambda: {"tracking": "idle"}
        bridge.publish_status_if_due(force=True)
        topic, payload, _ = bridge._client.published[-1]
        assert topic == config.status_topic
        status = json.loads(payload)
        assert status["remaining_minutes"] == 7
        assert status["status"] == "degraded"
        assert status["tracking"] == "idle"

        count = len(bridge._client.published)
        bridge.publish_status_if_due()
        assert len(bridge._client.published) == count
