"""macOS collaborators: session sensing, frontmost app, usage sampling, interventions."""

from __future__ import annotations

import locale
import logging
import os
import subprocess
import threading
import time
from typing import Callable, Optional

from AppKit import NSRunningApplication  # type: ignore
from Quartz.CoreGraphics import (  # type: ignore
    CGEventSourceSecondsSinceLastEventType,
    CGSessionCopyCurrentDictionary,
    CGWindowListCopyWindowInfo,
    kCGAnyInputEventType,
    kCGEventSourceStateHIDSystemState,
    kCGNullWindowID,
    kCGWindowListExcludeDesktopElements,
    kCGWindowListOptionOnScreenOnly,
)

from . import LOGGER_NAME
from .usage import UsageJournal

logger = logging.getLogger(f"{LOGGER_NAME}.macos")

OSASCRIPT = "/usr/bin/osascript"
CGSESSION = "/System/Library/CoreServices/Menu Extras/User.menu/Contents/Resources/CGSession"

SUPPORTED_LANG_PHRASES = {
    "en": {"title": "App Time", "blocked_body": "Your time for this app is used up."},
    "de": {"title": "App-Zeit", "blocked_body": "Deine Zeit für diese App ist aufgebraucht."},
    "fr": {"title": "Temps d'app", "blocked_body": "Ton temps pour cette app est écoulé."},
    "es": {"title": "Tiempo de app", "blocked_body": "Se acabó tu tiempo para esta app."},
    "it": {"title": "Tempo app", "blocked_body": "Il tuo tempo per questa app è finito."},
    "nl": {"title": "App-tijd", "blocked_body": "Je tijd voor deze app is op."},
    "pt": {"title": "Tempo de app", "blocked_body": "Seu tempo para este app acabou."},
    "ja": {"title": "アプリ時間", "blocked_body": "このアプリの時間を使い切りました。"},
    "zh": {"title": "应用时间", "blocked_body": "此应用的时间已用完。"},
}


def _normalize_lang(value: str) -> str:
    if not value:
        return "en"
    value = value.split(",")[0]
    for sep in ("-", "_"):
        if sep in value:
            value = value.split(sep)[0]
            break
    return value.lower() or "en"


def detect_language() -> str:
    candidates = []
    for key in ("LANGUAGE", "LANG", "APPLELANGUAGE"):
        val = os.environ.get(key)
        if val:
            candidates.append(val)
    try:
        loc = locale.getlocale()[0]
    except ValueError:
        loc = None
    if loc:
        candidates.append(loc)
    for cand in candidates:
        code = _normalize_lang(cand)
        if code in SUPPORTED_LANG_PHRASES:
            return code
    return "en"


def _applescript_string(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


# ------------------------------------------------------------- SENSING --


class SessionSensor:
    def is_session_locked(self) -> bool:
        session = CGSessionCopyCurrentDictionary() or {}
        return bool(session.get("CGSSessionScreenIsLocked", 0))

    def is_active(self, idle_timeout_seconds: float) -> bool:
        try:
            idle_seconds = CGEventSourceSecondsSinceLastEventType(
                kCGEventSourceStateHIDSystemState, kCGAnyInputEventType
            )
        except Exception:
            logger.exception("Unable to read idle timer; assuming active to keep accounting.")
            return True

        if idle_seconds is None:
            return True
        if idle_seconds > idle_timeout_seconds:
            return False
        return not self.is_session_locked()


class FrontmostAppDetector:
    """Bundle identifier of the app owning the frontmost on-screen window.

    When a live query comes back empty, the last seen app is reported as long
    as it was observed within the lookback window.
    """

    def __init__(self, sensor: Optional[SessionSensor] = None):
        self.sensor = sensor or SessionSensor()
        self._lock = threading.Lock()
        self._last_package: Optional[str] = None
        self._last_seen = 0.0

    def _query(self) -> Optional[str]:
        windows = CGWindowListCopyWindowInfo(
            kCGWindowListOptionOnScreenOnly | kCGWindowListExcludeDesktopElements,
            kCGNullWindowID,
        ) or []
        for window in windows:
            # Layer 0 is the normal app window layer; the list is front to back.
            if window.get("kCGWindowLayer", -1) != 0:
                continue
            pid = window.get("kCGWindowOwnerPID")
            if pid is None:
                continue
            app = NSRunningApplication.runningApplicationWithProcessIdentifier_(int(pid))
            if app is None:
                continue
            bundle_id = app.bundleIdentifier()
            if bundle_id:
                return str(bundle_id)
        return None

    def current_foreground_package(self, lookback_seconds: float) -> Optional[str]:
        if self.sensor.is_session_locked():
            return None
        package = self._query()
        now = time.monotonic()
        with self._lock:
            if package:
                self._last_package = package
                self._last_seen = now
                return package
            if self._last_package and now - self._last_seen <= lookback_seconds:
                return self._last_package
        return None


class ActivitySampler:
    """Credits foreground time to the usage journal and reports app switches."""

    def __init__(
        self,
        journal: UsageJournal,
        detector: FrontmostAppDetector,
        sensor: SessionSensor,
        interval_seconds: float = 1.0,
        idle_timeout_seconds: float = 120.0,
        on_foreground_changed: Optional[Callable[[Optional[str]], None]] = None,
        save_every_seconds: float = 30.0,
    ):
        self.journal = journal
        self.detector = detector
        self.sensor = sensor
        self.interval_seconds = interval_seconds
        self.idle_timeout_seconds = idle_timeout_seconds
        self.on_foreground_changed = on_foreground_changed
        self.save_every_seconds = save_every_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_tick = time.monotonic()
        self._last_save = self._last_tick
        self._last_package: Optional[str] = None

    def start(self) -> None:
        self._last_tick = time.monotonic()
        self._thread = threading.Thread(target=self._loop, name="usage-sampler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self.journal.save()

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.sample_once()
            except Exception:
                logger.warning("Usage sample failed.", exc_info=True)

    def sample_once(self) -> None:
        now = time.monotonic()
        # Cap the credit so a system sleep between samples is not counted as usage.
        elapsed = min(now - self._last_tick, self.interval_seconds * 3)
        self._last_tick = now

        package = self.detector.current_foreground_package(0)
        if package and self.sensor.is_active(self.idle_timeout_seconds):
            self.journal.add_seconds(package, elapsed)

        if package != self._last_package:
            self._last_package = package
            if self.on_foreground_changed is not None:
                self.on_foreground_changed(package)

        if now - self._last_save >= self.save_every_seconds:
            self.journal.save()
            self._last_save = now


# ------------------------------------------------------------- ACTIONS --


class OsascriptDispatcher:
    """Blocks a watched app by hiding it, asking it to quit, or locking the screen."""

    def __init__(self, mode: str = "hide", notify_every_seconds: float = 60.0, timeout: float = 10.0):
        self.mode = mode
        self.notify_every_seconds = notify_every_seconds
        self.timeout = timeout
        self._language = detect_language()
        self._last_notified = {}

    def _phrase(self, key: str) -> str:
        phrases = SUPPORTED_LANG_PHRASES.get(self._language, SUPPORTED_LANG_PHRASES["en"])
        return phrases.get(key) or SUPPORTED_LANG_PHRASES["en"][key]

    def _osascript(self, script: str) -> None:
        subprocess.run(
            [OSASCRIPT, "-e", script],
            check=True,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=self.timeout,
        )

    def dispatch(self, package: str) -> None:
        self._maybe_notify(package)
        if self.mode == "lock":
            self._lock_screen()
        elif self.mode == "quit":
            self._quit_app(package)
        else:
            self._hide_app(package)

    def _maybe_notify(self, package: str) -> None:
        now = time.monotonic()
        last = self._last_notified.get(package)
        if last is not None and now - last < self.notify_every_seconds:
            return
        self._last_notified[package] = now
        script = "display notification {} with title {}".format(
            _applescript_string(self._phrase("blocked_body")),
            _applescript_string(self._phrase("title")),
        )
        try:
            self._osascript(script)
        except (subprocess.SubprocessError, OSError):
            logger.warning("Failed to show blocked notification.", exc_info=True)

    def _hide_app(self, package: str) -> None:
        logger.info("Hiding %s (budget exhausted).", package)
        script = (
            'tell application "System Events" to set visible of '
            f"(first application process whose bundle identifier is {_applescript_string(package)}) to false"
        )
        try:
            self._osascript(script)
        except (subprocess.SubprocessError, OSError) as exc:
            logger.warning("Failed to hide %s: %s", package, exc)

    def _quit_app(self, package: str) -> None:
        logger.info("Quitting %s (budget exhausted).", package)
        try:
            self._osascript(f"tell application id {_applescript_string(package)} to quit")
        except (subprocess.SubprocessError, OSError) as exc:
            logger.warning("Failed to quit %s: %s", package, exc)

    def _lock_screen(self) -> None:
        logger.info("Locking screen (budget exhausted).")
        script = 'tell application "System Events" to key code 12 using {control down, command down}'
        try:
            self._osascript(script)
            return
        except (subprocess.SubprocessError, OSError) as exc:
            logger.warning("osascript lock failed (%s); trying CGSession -suspend", exc)

        try:
            subprocess.run(
                [CGSESSION, "-suspend"],
                check=True,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=self.timeout,
            )
        except (subprocess.SubprocessError, OSError) as exc:
            logger.error("Failed to lock screen via CGSession: %s", exc)
