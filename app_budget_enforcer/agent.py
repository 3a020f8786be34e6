"""
App Budget Agent
================

A per-user agent that:
1. Samples the frontmost application and journals foreground time per app.
2. Deducts time spent in watched apps from a persisted daily budget, once in
   the background every few seconds and again on entering a watched app.
3. Hides, quits or locks out a watched app when the budget is used up.
4. Optionally bridges the budget to Home Assistant over MQTT.

Run ``app-budget-enforcer run`` from a LaunchAgent for the user. The other
subcommands edit the ledger directly and are safe to use while it runs.
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from . import LOGGER_NAME, VERSION
from .config import AgentConfig, config_path_from_env
from .ledger import LedgerError, LedgerStore
from .mqtt_bridge import MqttBridge
from .scheduler import CadencePolicy, EnforcementScheduler
from .surface import BudgetControls, BudgetNotifier
from .usage import JournalUsageSource, UsageJournal

logger = logging.getLogger(LOGGER_NAME)

STATUS_CHECK_SECONDS = 5.0


class BudgetAgent:
    def __init__(
        self,
        config: AgentConfig,
        scheduler: EnforcementScheduler,
        controls: BudgetControls,
        sampler=None,
        bridge=None,
    ):
        self.config = config
        self.scheduler = scheduler
        self.controls = controls
        self.sampler = sampler
        self.bridge = bridge
        self._stop_event = threading.Event()

    def start(self) -> None:
        logger.info("Starting App Budget Agent v%s", VERSION)
        if self.bridge is not None:
            self.bridge.start()
        if self.sampler is not None:
            self.sampler.start()
        self.scheduler.start()
        self._main_loop()

    def request_stop(self) -> None:
        self._stop_event.set()

    def _main_loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                if self.bridge is not None:
                    self.bridge.publish_status_if_due()
                self._stop_event.wait(STATUS_CHECK_SECONDS)
        except KeyboardInterrupt:
            logger.info("Stopping agent (SIGINT).")
        finally:
            self._shutdown()

    def _shutdown(self) -> None:
        self.scheduler.stop()
        if self.sampler is not None:
            self.sampler.stop()
        if self.bridge is not None:
            self.bridge.stop()
        logger.info("Agent stopped.")


def build_agent(config: AgentConfig) -> BudgetAgent:
    # Platform modules pull in pyobjc, so only the running agent imports them.
    from .macos import ActivitySampler, FrontmostAppDetector, OsascriptDispatcher, SessionSensor

    store = LedgerStore(config.ledger_path)
    journal = UsageJournal(config.journal_path)
    notifier = BudgetNotifier()
    controls = BudgetControls(store, notifier)
    sensor = SessionSensor()
    detector = FrontmostAppDetector(sensor)

    scheduler = EnforcementScheduler(
        store=store,
        usage_source=JournalUsageSource(journal),
        detector=detector,
        dispatcher=OsascriptDispatcher(mode=config.intervention_mode),
        notifier=notifier,
        policy=CadencePolicy(config.base_interval_seconds, config.fast_interval_seconds),
        initial_delay_seconds=config.initial_delay_seconds,
        read_timeout_seconds=config.read_timeout_seconds,
        lookback_seconds=config.foreground_lookback_seconds,
        ignored_packages=config.ignored_packages,
    )
    sampler = ActivitySampler(
        journal,
        detector,
        sensor,
        interval_seconds=config.sample_interval_seconds,
        idle_timeout_seconds=config.idle_timeout_seconds,
        on_foreground_changed=scheduler.on_foreground_changed,
    )

    bridge = None
    if config.mqtt_host:
        bridge = MqttBridge(
            config,
            controls,
            status_extra=lambda: {
                "tracking": scheduler.state.value,
                "tracked_package": scheduler.tracked_package,
            },
        )
        notifier.register(bridge.publish_remaining)
    else:
        notifier.register(lambda minutes: logger.info("Remaining budget: %s min.", minutes))

    return BudgetAgent(config, scheduler, controls, sampler=sampler, bridge=bridge)


def setup_logging(cfg: AgentConfig) -> None:
    log_path = Path(cfg.log_file).expanduser()
    err_path = Path(cfg.err_log_file).expanduser()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    err_path.parent.mkdir(parents=True, exist_ok=True)

    handler_file = logging.FileHandler(log_path)
    handler_file.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    handler_err = logging.FileHandler(err_path)
    handler_err.setLevel(logging.ERROR)
    handler_err.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=[handler_file, handler_err, logging.StreamHandler(sys.stdout)],
    )


# ------------------------------------------------------------------ CLI --


def _cmd_run(cfg: AgentConfig, args: argparse.Namespace) -> int:
    if sys.platform != "darwin":
        print("The agent only runs on macOS.", file=sys.stderr)
        return 2
    setup_logging(cfg)
    agent = build_agent(cfg)

    def handle_signal(signum, frame):
        logger.info("Received signal %s, shutting down.", signum)
        agent.request_stop()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    agent.start()
    return 0


def _cmd_status(controls: BudgetControls, args: argparse.Namespace) -> int:
    print(json.dumps(controls.status(), indent=2))
    return 0


def _cmd_set_budget(controls: BudgetControls, args: argparse.Namespace) -> int:
    print(controls.set_remaining_minutes(args.minutes))
    return 0


def _cmd_add_time(controls: BudgetControls, args: argparse.Namespace) -> int:
    print(controls.add_minutes(args.minutes))
    return 0


def _cmd_watch(controls: BudgetControls, args: argparse.Namespace) -> int:
    watched = controls.set_watched_packages(args.packages)
    print("\n".join(sorted(watched)))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="app-budget-enforcer")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.json (default: $APP_BUDGET_AGENT_CONFIG or the system path)",
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("run", help="Run the enforcement agent (default)")
    sub.add_parser("status", help="Print the current ledger")

    p_set = sub.add_parser("set-budget", help="Set the remaining minutes")
    p_set.add_argument("minutes", type=int)

    p_add = sub.add_parser("add-time", help="Add minutes to the remaining budget")
    p_add.add_argument("minutes", type=int)

    p_watch = sub.add_parser("watch", help="Replace the watched bundle identifiers (none clears)")
    p_watch.add_argument("packages", nargs="*")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config_path = (args.config or config_path_from_env()).expanduser()
    try:
        cfg = AgentConfig.load(config_path)
    except Exception as exc:  # pragma: no cover - startup validation
        print(f"Failed to load config: {exc}", file=sys.stderr)
        return 2

    command = args.command or "run"
    if command == "run":
        return _cmd_run(cfg, args)

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(message)s")
    controls = BudgetControls(LedgerStore(cfg.ledger_path))
    handlers = {
        "status": _cmd_status,
        "set-budget": _cmd_set_budget,
        "add-time": _cmd_add_time,
        "watch": _cmd_watch,
    }
    try:
        return handlers[command](controls, args)
    except ValueError as exc:
        print(f"Invalid value: {exc}", file=sys.stderr)
        return 2
    except LedgerError as exc:
        print(f"Ledger unavailable: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
