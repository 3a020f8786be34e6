"""Home Assistant bridge: budget commands in, remaining minutes and status out."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import paho.mqtt.client as mqtt

from . import LOGGER_NAME, VERSION
from .config import AgentConfig
from .surface import BudgetControls
from .usage import now_local

logger = logging.getLogger(f"{LOGGER_NAME}.mqtt")

HEARTBEAT_SECONDS = 55


def parse_minutes(payload: str) -> Optional[int]:
    try:
        value = float(payload.strip())
    except ValueError:
        return None
    if value < 0 or value != int(value):
        return None
    return int(value)


def parse_packages(payload: str) -> Optional[List[str]]:
    payload = payload.strip()
    if not payload:
        return []
    if payload.startswith("["):
        try:
            data = json.loads(payload)
        except ValueError:
            return None
        if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
            return None
        return data
    return [item.strip() for item in payload.split(",") if item.strip()]


class MqttBridge:
    def __init__(
        self,
        config: AgentConfig,
        controls: BudgetControls,
        status_extra: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        self.config = config
        self.controls = controls
        self.status_extra = status_extra
        self._client = self._build_mqtt_client()
        self._connected = False
        self._discovery_published = False
        self._last_status_publish = 0.0

    @property
    def connected(self) -> bool:
        return self._connected

    @staticmethod
    def _mqtt_rc_reason(rc: int) -> str:
        rc_map = {
            0: "success",
            1: "incorrect protocol version",
            2: "invalid client identifier",
            3: "server unavailable",
            4: "bad username or password",
            5: "not authorized",
        }
        return rc_map.get(rc, "unknown")

    def _build_mqtt_client(self) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"app-budget-agent-{self.config.device_id}",
            protocol=mqtt.MQTTv311,
            clean_session=True,
        )
        if self.config.mqtt_username:
            client.username_pw_set(
                self.config.mqtt_username, password=self.config.mqtt_password or None
            )
        if self.config.mqtt_tls:
            client.tls_set()
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        if self.config.debug_mqtt:
            mqtt_logger = logging.getLogger(f"{LOGGER_NAME}.mqtt.paho")
            client.enable_logger(mqtt_logger)
        return client

    # ------------------------------------------------------------ CONNECT --

    def start(self) -> None:
        logger.info("Connecting to MQTT %s:%s", self.config.mqtt_host, self.config.mqtt_port)
        try:
            self._client.connect_async(self.config.mqtt_host, self.config.mqtt_port, keepalive=60)
        except Exception as exc:
            logger.error(
                "Failed to start MQTT connection to %s:%s: %s",
                self.config.mqtt_host,
                self.config.mqtt_port,
                exc,
            )
            return
        self._client.loop_start()

    def stop(self) -> None:
        try:
            if self._connected:
                self._client.publish(
                    self.config.status_topic,
                    json.dumps({"event": "offline", "version": VERSION}),
                    qos=1,
                )
            self._client.loop_stop()
            self._client.disconnect()
        except Exception:
            logger.warning("Error while shutting down MQTT.", exc_info=True)

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Dict[str, Any],
        reason_code: mqtt.ReasonCode,
        properties: Optional[mqtt.Properties] = None,
    ):
        rc = getattr(reason_code, "value", reason_code)
        try:
            rc = int(rc)
        except (TypeError, ValueError):
            logger.warning("Unexpected reason_code type on connect: %r", reason_code)
            rc = -1
        if rc != 0:
            logger.error("MQTT connection failed (rc=%s: %s)", rc, self._mqtt_rc_reason(rc))
            return
        logger.info("Connected to MQTT broker (rc=0: success).")
        self._connected = True
        client.subscribe(self.config.budget_set_topic)
        client.subscribe(self.config.budget_add_topic)
        client.subscribe(self.config.watched_set_topic)
        client.publish(
            self.config.status_topic,
            json.dumps({"event": "online", "version": VERSION}),
            qos=1,
            retain=False,
        )
        self._publish_discovery()
        try:
            self.publish_remaining(self.controls.get_remaining_minutes())
        except Exception:
            logger.warning("Could not publish remaining budget on connect.", exc_info=True)

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        disconnect_flags: Any,
        reason_code: mqtt.ReasonCode,
        properties: Optional[mqtt.Properties] = None,
    ):
        rc = getattr(reason_code, "value", reason_code)
        self._connected = False
        if rc != 0:
            logger.warning("Unexpected MQTT disconnect (rc=%s: %s)", rc, self._mqtt_rc_reason(rc))

    # ----------------------------------------------------------- COMMANDS --

    def _on_message(self, client: mqtt.Client, userdata: Any, message: mqtt.MQTTMessage):
        payload = (message.payload or b"").decode("utf-8", errors="ignore")
        if getattr(message, "retain", False):
            # A retained command would re-apply on every reconnect and undo deductions.
            logger.info("Ignoring retained command on %s.", message.topic)
            return

        try:
            if message.topic in (self.config.budget_set_topic, self.config.budget_add_topic):
                minutes = parse_minutes(payload)
                if minutes is None:
                    logger.warning("Invalid minutes payload '%s' on %s", payload, message.topic)
                    return
                if message.topic == self.config.budget_set_topic:
                    self.controls.set_remaining_minutes(minutes)
                else:
                    self.controls.add_minutes(minutes)
            elif message.topic == self.config.watched_set_topic:
                packages = parse_packages(payload)
                if packages is None:
                    logger.warning("Invalid watch list payload '%s' on %s", payload, message.topic)
                    return
                watched = self.controls.set_watched_packages(packages)
                self._publish(self.config.watched_state_topic, json.dumps(sorted(watched)), retain=True)
        except ValueError as exc:
            logger.warning("Rejected command on %s: %s", message.topic, exc)
        except Exception:
            logger.error("Failed to apply command on %s.", message.topic, exc_info=True)

    # ------------------------------------------------------------ PUBLISH --

    def _publish(self, topic: str, payload: str, retain: bool = False, qos: int = 1) -> None:
        try:
            self._client.publish(topic, payload=payload, retain=retain, qos=qos)
        except Exception:
            logger.warning("Failed to publish to %s.", topic, exc_info=True)

    def publish_remaining(self, remaining_minutes: int) -> None:
        """``on_budget_changed`` sink."""
        self._publish(self.config.remaining_topic, str(remaining_minutes), retain=True)

    def publish_status_if_due(self, force: bool = False) -> None:
        now = time.monotonic()
        if not force and now - self._last_status_publish < HEARTBEAT_SECONDS:
            return
        try:
            status = self.controls.status()
        except Exception:
            logger.warning("Could not read ledger for status.", exc_info=True)
            status = {}
        payload = {
            "status": "online" if self._connected else "degraded",
            "version": VERSION,
            "device_id": self.config.device_id,
            "timestamp": now_local().isoformat(),
        }
        payload.update(status)
        if self.status_extra is not None:
            payload.update(self.status_extra())
        self._publish(self.config.status_topic, json.dumps(payload), qos=0)
        self._last_status_publish = now

    def _discovery_device(self) -> dict:
        return {
            "identifiers": [self.config.discovery_base_id],
            "name": f"{self.config.device_id} app budget",
            "manufacturer": "App Budget Enforcer",
            "model": "macOS agent",
            "sw_version": VERSION,
        }

    def _publish_discovery(self) -> None:
        if self._discovery_published:
            return
        device = self._discovery_device()
        base_id = self.config.discovery_base_id
        disc = [
            (
                "sensor",
                f"{base_id}_remaining",
                {
                    "name": f"{self.config.device_id} App Budget Remaining",
                    "unique_id": f"{base_id}_remaining",
                    "state_topic": self.config.remaining_topic,
                    "unit_of_measurement": "min",
                    "icon": "mdi:timer-sand",
                    "device": device,
                },
            ),
            (
                "number",
                f"{base_id}_budget",
                {
                    "name": f"{self.config.device_id} App Budget (min)",
                    "unique_id": f"{base_id}_budget",
                    "state_topic": self.config.remaining_topic,
                    "command_topic": self.config.budget_set_topic,
                    "min": 0,
                    "max": 600,
                    "step": 5,
                    "mode": "box",
                    "unit_of_measurement": "min",
                    "icon": "mdi:timer-edit-outline",
                    "device": device,
                },
            ),
        ]
        try:
            for domain, obj_id, payload in disc:
                topic = f"homeassistant/{domain}/{obj_id}/config"
                self._client.publish(topic, json.dumps(payload), retain=True, qos=1)
            self._discovery_published = True
        except Exception:
            logger.warning("Failed to publish MQTT discovery topics.", exc_info=True)
