"""Agent configuration loaded from a JSON file."""

from __future__ import annotations

import json
import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

DEFAULT_CONFIG_PATH = "/Library/Application Support/app-budget-agent/config.json"
CONFIG_ENV_VAR = "APP_BUDGET_AGENT_CONFIG"
DEFAULT_STATE_DIR = Path.home() / "Library" / "Application Support" / "app-budget-agent"
DEFAULT_LOG_PATH = "/tmp/app_budget_agent.out.log"
DEFAULT_ERR_LOG_PATH = "/tmp/app_budget_agent.err.log"

INTERVENTION_MODES = {"hide", "quit", "lock"}

# Foregrounding one of these means the user left the watched app.
DEFAULT_IGNORED_PACKAGES = [
    "com.apple.dock",
    "com.apple.loginwindow",
    "com.apple.ScreenSaver.Engine",
    "com.apple.notificationcenterui",
]


def sanitize_device_id(value: str) -> str:
    sanitized = "".join(ch if ch.isalnum() or ch in "-_" else "-" for ch in value.lower())
    return sanitized or "mac"


def config_path_from_env() -> Path:
    return Path(os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH)).expanduser()


def _string_list(data: Dict[str, Any], key: str, default: List[str]) -> List[str]:
    raw = data.get(key)
    if raw is None:
        return list(default)
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise ValueError(f"`{key}` must be a list of bundle identifiers.")
    return [item.strip() for item in raw if item.strip()]


@dataclass
class AgentConfig:
    device_id: str = "mac"
    ledger_path: Path = DEFAULT_STATE_DIR / "ledger.json"
    journal_path: Path = DEFAULT_STATE_DIR / "usage.json"
    base_interval_seconds: float = 15.0
    fast_interval_seconds: float = 5.0
    initial_delay_seconds: float = 2.0
    sample_interval_seconds: float = 1.0
    idle_timeout_seconds: int = 120
    foreground_lookback_seconds: float = 10.0
    read_timeout_seconds: float = 3.0
    intervention_mode: str = "hide"  # hide | quit | lock
    ignored_packages: List[str] = field(default_factory=lambda: list(DEFAULT_IGNORED_PACKAGES))
    mqtt_host: Optional[str] = None
    mqtt_port: int = 1883
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_tls: bool = False
    topic_prefix: str = "appbudget/mac"
    debug_mqtt: bool = False
    log_file: str = DEFAULT_LOG_PATH
    err_log_file: str = DEFAULT_ERR_LOG_PATH

    @classmethod
    def load(cls, path: Path) -> "AgentConfig":
        """Read ``path``; a missing file gives the defaults."""
        if not path.exists():
            return cls.from_dict({})
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        if not isinstance(data, dict):
            raise ValueError("Config must be a JSON object.")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentConfig":
        device_id = data.get("device_id") or platform.node() or "mac"
        device_id = sanitize_device_id(str(device_id))

        base_interval = float(data.get("base_interval_seconds", 15))
        if not (5 <= base_interval <= 60):
            raise ValueError("`base_interval_seconds` must be between 5 and 60.")

        fast_interval = float(data.get("fast_interval_seconds", 5))
        if not (1 <= fast_interval <= base_interval):
            raise ValueError("`fast_interval_seconds` must be between 1 and the base interval.")

        initial_delay = float(data.get("initial_delay_seconds", 2))
        if initial_delay < 0:
            raise ValueError("`initial_delay_seconds` must be >= 0.")

        sample_interval = float(data.get("sample_interval_seconds", 1))
        if not (0.5 <= sample_interval <= 10):
            raise ValueError("`sample_interval_seconds` must be between 0.5 and 10.")

        idle_timeout = int(data.get("idle_timeout_seconds", 120))
        if idle_timeout < sample_interval:
            raise ValueError("`idle_timeout_seconds` must be >= sample interval.")

        lookback = float(data.get("foreground_lookback_seconds", 10))
        if lookback < 0:
            raise ValueError("`foreground_lookback_seconds` must be >= 0.")

        read_timeout = float(data.get("read_timeout_seconds", 3))
        if read_timeout <= 0:
            raise ValueError("`read_timeout_seconds` must be > 0.")

        intervention_mode = str(data.get("intervention_mode", "hide")).lower()
        if intervention_mode not in INTERVENTION_MODES:
            raise ValueError("`intervention_mode` must be hide, quit or lock.")

        mqtt_host = (data.get("mqtt_host") or "").strip() or None
        mqtt_port = int(data.get("mqtt_port", 1883))
        if not (1 <= mqtt_port <= 65535):
            raise ValueError("Config `mqtt_port` must be between 1 and 65535.")

        topic_prefix = str(data.get("topic_prefix") or f"appbudget/{device_id}").rstrip("/")

        state_dir = Path(data.get("state_dir", str(DEFAULT_STATE_DIR))).expanduser()
        ledger_path = Path(data.get("ledger_path", str(state_dir / "ledger.json"))).expanduser()
        journal_path = Path(data.get("journal_path", str(state_dir / "usage.json"))).expanduser()

        return cls(
            device_id=device_id,
            ledger_path=ledger_path,
            journal_path=journal_path,
            base_interval_seconds=base_interval,
            fast_interval_seconds=fast_interval,
            initial_delay_seconds=initial_delay,
            sample_interval_seconds=sample_interval,
            idle_timeout_seconds=idle_timeout,
            foreground_lookback_seconds=lookback,
            read_timeout_seconds=read_timeout,
            intervention_mode=intervention_mode,
            ignored_packages=_string_list(data, "ignored_packages", DEFAULT_IGNORED_PACKAGES),
            mqtt_host=mqtt_host,
            mqtt_port=mqtt_port,
            mqtt_username=data.get("mqtt_username"),
            mqtt_password=data.get("mqtt_password"),
            mqtt_tls=bool(data.get("mqtt_tls", False)),
            topic_prefix=topic_prefix,
            debug_mqtt=bool(data.get("debug_mqtt", False)),
            log_file=data.get("log_file", DEFAULT_LOG_PATH),
            err_log_file=data.get("err_log_file", DEFAULT_ERR_LOG_PATH),
        )

    @property
    def remaining_topic(self) -> str:
        return f"{self.topic_prefix}/budget/remaining"

    @property
    def budget_set_topic(self) -> str:
        return f"{self.topic_prefix}/budget/set"

    @property
    def budget_add_topic(self) -> str:
        return f"{self.topic_prefix}/budget/add"

    @property
    def watched_set_topic(self) -> str:
        return f"{self.topic_prefix}/watched/set"

    @property
    def watched_state_topic(self) -> str:
        return f"{self.topic_prefix}/watched"

    @property
    def status_topic(self) -> str:
        return f"{self.topic_prefix}/status"

    @property
    def discovery_base_id(self) -> str:
        return f"{self.device_id}_app_budget"
