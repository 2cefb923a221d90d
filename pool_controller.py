#!/usr/bin/env python3
"""
pool_controller.py

GPIO pool/spa controller for Raspberry Pi.  It drives a pump (with a
turbo/high speed relay), two motorised diverter valves that route the
suction and return lines to either the pool or the spa, and a spa heater.
Everything is commanded through relay outputs and exposed over a small
HTTP API so that any number of phones and tablets can watch and change the
current mode.

Key features:

  • Modes ("auto", "spa", "turbo-clean", "service", ...) are JSON files in
    the `modes/` directory next to this script.  Each one names a target
    pump/valve/heater configuration.
  • Mode switches run in the background.  The valves take about 30 seconds
    to travel, so the controller starts a valve timeline, applies what can
    be applied immediately (holding the pump at low speed while the spa
    path opens), and schedules the rest for when the valves arrive.
  • Only one switch may be in flight.  A second request for the same mode
    is a no-op; a request for a different mode is refused with 409.
  • Any failure during a switch drives the equipment into the safe
    "service" configuration and is reported in `lastError`.
  • `/status` includes the valve timeline and the server clock so viewers
    can animate the valve locally without drifting apart.
  • Without GPIO hardware the controller falls back to gpiozero's mock pin
    factory and only logs what it would have written.

See the bottom of this file for a concise usage manual.
"""
from __future__ import annotations

import argparse
import copy
import json
import logging
import os
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Optional

import requests
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from flask import Flask, jsonify, redirect, request
from gpiozero import Device, DigitalOutputDevice
from gpiozero.exc import GPIOZeroError
from gpiozero.pins.mock import MockFactory

logger = logging.getLogger("pool_controller")

# Path to the configuration file and the mode definitions.  Both live next
# to this script.
CONFIG_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "config.json")
MODES_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "modes")

# Time the valve actuators need to swing fully between pool and spa.
VALVE_WAIT_MS = 30_000

USER_AGENT = "pool-controller/1.0"

# ---------- Default Config ----------
#
# Pins use BCM numbers.  `active_high` determines whether writing a logical
# 1 energises the relay.  All outputs start de-energised.

DEFAULT_CONFIG = {
    "pins": {
        "PUMP":          {"gpio": 23, "active_high": True},
        "PUMP_TURBO":    {"gpio": 18, "active_high": True},
        "RELAY_INFLOW":  {"gpio": 25, "active_high": True},
        "RELAY_OUTFLOW": {"gpio": 24, "active_high": True},
        "HEATER_SPA":    {"gpio": 14, "active_high": True},
    },
    "valve_wait_ms": VALVE_WAIT_MS,
    # Mode reported at boot.  Equipment itself stays de-energised until the
    # first switch.
    "default_mode": "auto",
    # Mode applied when a switch fails.
    "safe_mode": "service",
    "web": {"host": "0.0.0.0", "port": 8080},
}


def now_ms() -> int:
    return int(time.time() * 1000)


# =========================
# Errors
# =========================

class ControllerError(Exception):
    """Base class for errors reported by the controller."""


class UnknownMode(ControllerError):
    def __init__(self, key: str):
        super().__init__(f"Unknown mode: {key}")
        self.key = key


class Busy(ControllerError):
    def __init__(self, target: Optional[str]):
        super().__init__("Busy with another operation")
        self.target = target


class TransitionFailure(ControllerError):
    """A mode switch failed part way and was recovered into the safe mode."""


class DriverFailure(ControllerError):
    """The relay driver could not write the requested pin levels."""


class InvalidEquipment(ControllerError):
    def __init__(self, field_name: str):
        super().__init__(f"Unknown equipment type: {field_name}")
        self.field = field_name


# =========================
# Equipment / mode model
# =========================

class Power(str, Enum):
    ON = "on"
    OFF = "off"


class PumpSpeed(str, Enum):
    LOW = "low"
    HIGH = "high"


class ValveRoute(str, Enum):
    POOL = "pool"
    SPA = "spa"


# Wire name -> (attribute, domain)
EQUIPMENT_FIELDS = {
    "pump": ("pump", Power),
    "pumpSpeed": ("pump_speed", PumpSpeed),
    "inflowValve": ("inflow_valve", ValveRoute),
    "outflowValve": ("outflow_valve", ValveRoute),
    "heater": ("heater", Power),
}


@dataclass(frozen=True)
class EquipmentState:
    """Snapshot of the pump, valve and heater configuration.

    Instances are immutable, so handing one out never aliases the
    controller's own record.  `pump_speed` is kept as-is while the pump is
    off so the last speed is resumed when it comes back on.
    """

    pump: Power = Power.OFF
    pump_speed: PumpSpeed = PumpSpeed.LOW
    inflow_valve: ValveRoute = ValveRoute.POOL
    outflow_valve: ValveRoute = ValveRoute.POOL
    heater: Power = Power.OFF

    @classmethod
    def from_config(cls, config: Optional[dict]) -> "EquipmentState":
        """Build a state from a JSON mapping using the wire field names.

        Missing fields take their defaults; unrecognised values raise
        ValueError.
        """
        config = config or {}
        if not isinstance(config, dict):
            raise ValueError("equipment must be an object")
        values = {}
        for wire, (attr, domain) in EQUIPMENT_FIELDS.items():
            raw = config.get(wire)
            if raw is None:
                continue
            try:
                values[attr] = domain(raw)
            except ValueError:
                allowed = ", ".join(v.value for v in domain)
                raise ValueError(f"Invalid {wire}: {raw!r} (expected one of {allowed})") from None
        return cls(**values)

    def with_field(self, wire: str, value) -> "EquipmentState":
        """Return a copy with one field changed.

        An unknown field raises InvalidEquipment.  A value outside the
        field's domain leaves the state untouched.
        """
        if wire not in EQUIPMENT_FIELDS:
            raise InvalidEquipment(wire)
        attr, domain = EQUIPMENT_FIELDS[wire]
        try:
            parsed = domain(value)
        except ValueError:
            return self
        return replace(self, **{attr: parsed})

    @property
    def valve_percent(self) -> float:
        # Valves only settle at the endpoints: both on spa is 100%, anything
        # else is the pool position.
        if self.inflow_valve is ValveRoute.SPA and self.outflow_valve is ValveRoute.SPA:
            return 100.0
        return 0.0

    def to_dict(self) -> dict:
        return {wire: getattr(self, attr).value for wire, (attr, _) in EQUIPMENT_FIELDS.items()}


@dataclass(frozen=True)
class ModeConfig:
    key: str
    name: str
    description: str = ""
    order: int = 999
    color: Optional[str] = None
    equipment: EquipmentState = EquipmentState()

    @classmethod
    def from_config(cls, key: str, config: dict) -> "ModeConfig":
        if not isinstance(config, dict):
            raise ValueError(f"Mode {key}: definition must be an object")
        try:
            equipment = EquipmentState.from_config(config.get("equipment"))
        except ValueError as e:
            raise ValueError(f"Mode {key}: {e}") from None
        order = config.get("order")
        if order is None:
            order = 999
        return cls(
            key=key,
            name=str(config.get("name") or key),
            description=str(config.get("description") or ""),
            order=int(order),
            color=config.get("color"),
            equipment=equipment,
        )

    def summary(self) -> dict:
        return {
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "order": self.order,
        }


class ModeCatalog:
    """Read-only mapping of mode key to ModeConfig, in load order."""

    def __init__(self, modes: Iterable[ModeConfig]):
        table: Dict[str, ModeConfig] = {}
        for mode in modes:
            if mode.key in table:
                raise ValueError(f"Duplicate mode key: {mode.key}")
            table[mode.key] = mode
        self._modes = MappingProxyType(table)

    @classmethod
    def load_directory(cls, modes_dir: str) -> "ModeCatalog":
        """Load every *.json file in `modes_dir`; the file name is the key."""
        modes = []
        for fname in sorted(os.listdir(modes_dir)):
            if not fname.endswith(".json"):
                continue
            key = fname[: -len(".json")]
            with open(os.path.join(modes_dir, fname), "r") as f:
                try:
                    config = json.load(f)
                except json.JSONDecodeError as e:
                    raise ValueError(f"Mode {key}: {e}") from None
            modes.append(ModeConfig.from_config(key, config))
        if not modes:
            raise ValueError(f"No mode definitions found in {modes_dir}")
        return cls(modes)

    def get(self, key: str) -> Optional[ModeConfig]:
        return self._modes.get(key)

    def __contains__(self, key) -> bool:
        return key in self._modes

    def __iter__(self):
        return iter(self._modes)

    def __len__(self) -> int:
        return len(self._modes)

    def sorted_modes(self) -> List[ModeConfig]:
        # sorted() is stable, so equal weights keep load order
        return sorted(self._modes.values(), key=lambda m: m.order)


# =========================
# Valve timeline
# =========================

def interpolate_percent(from_pct: float, to_pct: float, start_ms: float, duration_ms: float, at_ms: float) -> float:
    """Linear valve position at `at_ms`, clamped to the segment endpoints."""
    if duration_ms <= 0:
        return float(to_pct)
    t = max(0.0, min(1.0, (at_ms - start_ms) / duration_ms))
    return from_pct + (to_pct - from_pct) * t


@dataclass
class ValveTimeline:
    """Shared position of both diverter valves, 0 (pool) to 100 (spa).

    While `moving` the authoritative position is interpolated from the
    segment fields; otherwise `percent` is.
    """

    percent: float = 0.0
    moving: bool = False
    from_percent: float = 0.0
    to_percent: float = 0.0
    start_ms: int = 0
    duration_ms: int = VALVE_WAIT_MS

    def current_percent(self, at_ms: float) -> float:
        if not self.moving:
            return self.percent
        return interpolate_percent(self.from_percent, self.to_percent, self.start_ms, self.duration_ms, at_ms)

    def start(self, from_pct: float, to_pct: float, at_ms: int, duration_ms: int) -> None:
        self.from_percent = float(from_pct)
        self.to_percent = float(to_pct)
        self.start_ms = int(at_ms)
        self.duration_ms = int(duration_ms)
        self.moving = True

    def settle(self, percent: float) -> None:
        self.percent = float(percent)
        self.moving = False

    def halt(self, at_ms: float) -> None:
        """Stop where the valves are now instead of where they were headed."""
        self.settle(self.current_percent(at_ms))

    def to_dict(self, at_ms: float) -> dict:
        return {
            "percent": self.current_percent(at_ms),
            "moving": self.moving,
            "from": self.from_percent,
            "to": self.to_percent,
            "startMs": self.start_ms,
            "durationMs": self.duration_ms,
        }


@dataclass
class OperationStatus:
    mode: str
    target: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self.target is not None


# =========================
# Relay driver (gpiozero)
# =========================

PIN_NAMES = ("PUMP", "PUMP_TURBO", "RELAY_INFLOW", "RELAY_OUTFLOW", "HEATER_SPA")


def pin_levels_for(state: EquipmentState) -> Dict[str, int]:
    pump_on = state.pump is Power.ON
    return {
        "PUMP": 1 if pump_on else 0,
        "PUMP_TURBO": 1 if (pump_on and state.pump_speed is PumpSpeed.HIGH) else 0,
        "RELAY_INFLOW": 1 if state.inflow_valve is ValveRoute.SPA else 0,
        "RELAY_OUTFLOW": 1 if state.outflow_valve is ValveRoute.SPA else 0,
        "HEATER_SPA": 1 if state.heater is Power.ON else 0,
    }


class RelayDriver:
    """Wraps a gpiozero DigitalOutputDevice for each configured relay.

    In simulator mode pin writes are logged instead of performed; the
    recorded levels are updated either way so status displays stay
    meaningful.
    """

    def __init__(self, pins: dict, pin_factory=None, simulator: bool = False, hardware_available: bool = True):
        self.pins = pins
        self.hardware_available = hardware_available
        self.simulator = simulator or not hardware_available
        self.devices: Dict[str, DigitalOutputDevice] = {}
        self._lock = threading.RLock()
        self._state = EquipmentState()
        self._levels: Dict[str, int] = {}
        for name, meta in pins.items():
            if name not in PIN_NAMES:
                raise ValueError(f"Unknown relay name in config: {name}")
            self.devices[name] = DigitalOutputDevice(
                int(meta["gpio"]),
                active_high=bool(meta.get("active_high", True)),
                initial_value=False,
                pin_factory=pin_factory,
            )
            self._levels[name] = 0
            logger.debug("[GPIO] %s (GPIO %s) initialized -> LOW", name, meta["gpio"])

    def apply(self, state: EquipmentState) -> None:
        levels = pin_levels_for(state)
        with self._lock:
            if self.simulator:
                logger.info("[SIMULATOR] Would apply GPIO states: %s", levels)
            else:
                self._write(levels)
            self._state = state
            self._levels = {name: levels[name] for name in self.devices}
        logger.info(
            "Applied state: pump=%s/%s, valves=%s/%s, heater=%s",
            state.pump.value, state.pump_speed.value,
            state.inflow_valve.value, state.outflow_valve.value, state.heater.value,
        )

    def _write(self, levels: Dict[str, int]) -> None:
        try:
            for name, dev in self.devices.items():
                if levels[name]:
                    dev.on()
                else:
                    dev.off()
        except Exception as e:
            raise DriverFailure(f"GPIO write failed: {e}") from e

    def current_state(self) -> EquipmentState:
        with self._lock:
            return self._state

    def current_pin_levels(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._levels)

    def set_simulator(self, enabled: bool) -> bool:
        """Toggle simulator mode; refuses to leave it without hardware."""
        with self._lock:
            if not enabled and not self.hardware_available:
                logger.warning("Cannot disable simulator mode: GPIO hardware not available")
                return False
            if not enabled:
                # bring the real outputs in line with what has been reported
                self._write(self._levels)
            self.simulator = enabled
        logger.info("Simulator mode toggled: %s", "ENABLED" if enabled else "DISABLED")
        return True

    def close(self) -> None:
        """Drive every output low and release the pins."""
        with self._lock:
            for name, dev in self.devices.items():
                try:
                    dev.off()
                    dev.close()
                except Exception:
                    logger.exception("[GPIO] Cleanup failed for %s", name)
            self._levels = {name: 0 for name in self.devices}


def detect_pin_factory(probe_gpio: int = 25):
    """Return gpiozero's default pin factory if real GPIO hardware works.

    Returns None when the GPIO character device is missing or no native
    pin factory can drive the probe pin; callers then fall back to the mock
    factory and simulator mode.
    """
    if not os.path.exists("/dev/gpiochip0"):
        logger.info("GPIO device not accessible - /dev/gpiochip0 not found")
        return None
    try:
        probe = DigitalOutputDevice(probe_gpio, initial_value=False)
        probe.close()
    except (GPIOZeroError, OSError) as e:
        logger.info("GPIO initialization test failed: %s", e)
        return None
    logger.info("GPIO hardware validation successful")
    return Device.pin_factory


def build_driver(cfg: dict, simulator: bool = False) -> RelayDriver:
    factory = None if simulator else detect_pin_factory(int(cfg["pins"]["RELAY_INFLOW"]["gpio"]))
    hardware = factory is not None
    if not hardware:
        if not simulator:
            logger.warning("GPIO hardware not detected - automatically enabling simulator mode")
        factory = MockFactory()
    return RelayDriver(cfg["pins"], pin_factory=factory, simulator=simulator, hardware_available=hardware)


# =========================
# Mode orchestrator
# =========================

@dataclass(frozen=True)
class _Transition:
    key: str
    target_state: EquipmentState
    target_percent: float
    applied: EquipmentState


class ModeOrchestrator:
    """Single-flight state machine that sequences equipment changes.

    A switch runs in two halves.  The first half happens inside the request:
    the valve timeline starts and everything that does not depend on the
    valves having arrived is applied.  The second half is a one-shot
    scheduler job that fires when the valves finish travelling, settles the
    timeline and applies the rest of the target state.  Between the two the
    controller is busy and refuses switches to any other mode.

    Reads (`status`, `valve`, `observe`) only take the lock for as long as
    it takes to copy the records, so they never wait on valve travel.
    """

    TRAVEL_JOB_ID = "valve-travel"

    def __init__(
        self,
        catalog: ModeCatalog,
        driver: RelayDriver,
        valve_wait_ms: int = VALVE_WAIT_MS,
        default_mode: str = "auto",
        safe_mode: str = "service",
        clock: Optional[Callable[[], int]] = None,
        scheduler=None,
    ):
        if default_mode not in catalog:
            raise UnknownMode(default_mode)
        self.catalog = catalog
        self.driver = driver
        self.valve_wait_ms = int(valve_wait_ms)
        self.default_mode = default_mode
        self.safe_mode = safe_mode
        self.clock = clock or now_ms
        self.sched = scheduler if scheduler is not None else BackgroundScheduler(daemon=True)
        self._lock = threading.RLock()
        self._status = OperationStatus(mode=default_mode)
        self._valve = ValveTimeline(duration_ms=self.valve_wait_ms)
        self._pending: Optional[_Transition] = None

    def start(self):
        self.sched.start()

    def shutdown(self):
        self.sched.shutdown(wait=False)

    # ---- reads ----

    def status(self) -> OperationStatus:
        with self._lock:
            return replace(self._status)

    def valve(self) -> ValveTimeline:
        with self._lock:
            return replace(self._valve)

    def observe(self):
        """Return consistent copies of status, valve, equipment and pins."""
        with self._lock:
            return (
                replace(self._status),
                replace(self._valve),
                self.driver.current_state(),
                self.driver.current_pin_levels(),
            )

    # ---- writes ----

    def request_switch(self, key: str) -> OperationStatus:
        """Start switching to mode `key` and return without waiting for it.

        Raises UnknownMode for a key that is not in the catalog and Busy
        when another switch is in flight.  Asking again for the mode that is
        current, or for the one already being switched to, changes nothing.
        """
        with self._lock:
            mode = self.catalog.get(key)
            if mode is None:
                raise UnknownMode(key)
            if not self._status.busy and self._status.mode == key:
                return replace(self._status)
            if self._status.busy:
                if self._status.target == key:
                    return replace(self._status)
                raise Busy(self._status.target)

            self._status.target = key
            logger.info("[ModeSwitch] Switching to mode: %s", mode.name)
            try:
                self._begin(mode)
            except Exception as e:
                logger.exception("[ModeSwitchError] Mode switch to %s failed", key)
                self._recover(e)
            return replace(self._status)

    def spa(self, on: bool) -> OperationStatus:
        return self.request_switch("spa" if on else self.default_mode)

    def _begin(self, mode: ModeConfig) -> None:
        now = self.clock()
        current = self._valve.current_percent(now)
        target_pct = mode.equipment.valve_percent
        travel = target_pct != current
        if travel:
            self._valve.start(current, target_pct, now, self.valve_wait_ms)
            logger.info("[ValveTravel] Moving valves from %.1f%% to %.1f%%", current, target_pct)

        first = mode.equipment
        if travel and target_pct > current and first.pump_speed is PumpSpeed.HIGH:
            # no high flow against a half-open spa path
            first = replace(first, pump_speed=PumpSpeed.LOW)
        self.driver.apply(first)

        if not travel:
            self._complete(mode.key)
            return

        self._pending = _Transition(mode.key, mode.equipment, target_pct, first)
        run_at = datetime.fromtimestamp((now + self.valve_wait_ms) / 1000.0).astimezone()
        self.sched.add_job(
            self._finish_travel,
            args=[mode.key],
            trigger=DateTrigger(run_date=run_at),
            id=self.TRAVEL_JOB_ID,
            replace_existing=True,
            misfire_grace_time=None,
        )
        logger.info("[ValveTravel] Waiting %d ms for valve transition", self.valve_wait_ms)

    def _finish_travel(self, key: str) -> None:
        """Scheduled job: valves have arrived, apply the remaining state."""
        with self._lock:
            pending = self._pending
            if pending is None or pending.key != key:
                logger.warning("[ValveTravel] No transition to %s in flight; ignoring", key)
                return
            try:
                self._valve.settle(pending.target_percent)
                if pending.applied != pending.target_state:
                    self.driver.apply(pending.target_state)
                self._complete(key)
            except Exception as e:
                logger.exception("[ModeSwitchError] Mode switch to %s failed", key)
                self._recover(e)
            finally:
                self._pending = None
                self._status.target = None

    def _complete(self, key: str) -> None:
        self._status.mode = key
        self._status.last_error = None
        self._status.target = None
        self._pending = None
        logger.info("[ModeSwitch] Mode switch complete: %s", self.catalog.get(key).name)

    def _safe_state(self) -> EquipmentState:
        mode = self.catalog.get(self.safe_mode)
        if mode is None:
            return EquipmentState()
        return mode.equipment

    def _recover(self, error: Exception) -> None:
        # Motion is abandoned where it is; the relays are about to be
        # switched to the safe configuration anyway.
        self._valve.halt(self.clock())
        if not isinstance(error, ControllerError):
            error = TransitionFailure(f"Mode switch failed: {error}")
        self._status.last_error = f"{type(error).__name__}: {error}"
        try:
            self.driver.apply(self._safe_state())
            logger.warning("[SafeMode] Equipment returned to %s", self.safe_mode)
        except Exception as e:
            logger.exception("[SafeMode] Could not apply %s", self.safe_mode)
            self._status.last_error += f"; safe mode failed: {e}"
        self._status.mode = self.safe_mode
        self._status.target = None
        self._pending = None

    def manual_override(self, field_name: str, value) -> OperationStatus:
        """Change one equipment field directly, leaving catalog modes.

        Values outside the field's domain are ignored.  Refused with Busy
        while a switch is in flight.
        """
        with self._lock:
            if self._status.busy:
                raise Busy(self._status.target)
            updated = self.driver.current_state().with_field(field_name, value)
            try:
                self.driver.apply(updated)
            except DriverFailure as e:
                self._status.last_error = str(e)
                raise
            self._valve.settle(updated.valve_percent)
            self._status.mode = self.safe_mode
            return replace(self._status)

    def set_simulator(self, enabled: bool) -> bool:
        """Toggle driver simulation; a failed hand-over to hardware is recorded."""
        with self._lock:
            try:
                return self.driver.set_simulator(enabled)
            except DriverFailure as e:
                self._status.last_error = str(e)
                raise


# =========================
# Status synchronizer
# =========================

class StatusSynchronizer:
    """Builds the status payload viewers poll."""

    def __init__(self, orchestrator: ModeOrchestrator):
        self.orchestrator = orchestrator

    def snapshot(self) -> dict:
        orch = self.orchestrator
        status, valve, equipment, gpio = orch.observe()
        server_now = orch.clock()
        driver = orch.driver
        return {
            "ok": True,
            "mode": status.mode,
            "busy": status.busy,
            "target": status.target,
            "equipment": equipment.to_dict(),
            "gpio": gpio,
            "serverNow": server_now,
            "valveWaitMs": orch.valve_wait_ms,
            "valve": valve.to_dict(server_now),
            "modes": [m.summary() for m in orch.catalog.sorted_modes()],
            "simulator": driver.simulator,
            "gpioHardwareAvailable": driver.hardware_available,
            "lastError": status.last_error,
        }


class ViewerClock:
    """Viewer-side clock skew estimate for rendering the valve timeline.

    Each status response yields a sample `local_now - serverNow`.  The
    first sample is taken as-is; later ones are blended in with an
    exponential moving average to smooth out network latency.  Rendering
    then evaluates the server's timeline at `local_now - skew`, so viewers
    with different clocks draw the same position.
    """

    SMOOTHING = 0.8

    def __init__(self):
        self.skew_ms: Optional[float] = None

    def observe(self, server_now: float, local_now: float) -> float:
        sample = float(local_now - server_now)
        if self.skew_ms is None:
            self.skew_ms = sample
        else:
            self.skew_ms = self.skew_ms * self.SMOOTHING + sample * (1 - self.SMOOTHING)
        return self.skew_ms

    def server_time(self, local_now: float) -> float:
        return local_now - (self.skew_ms or 0.0)

    def render_percent(self, snapshot: dict, local_now: float) -> float:
        valve = snapshot["valve"]
        if not valve.get("moving") or not valve.get("durationMs"):
            return float(valve["percent"])
        return interpolate_percent(
            float(valve["from"]), float(valve["to"]),
            float(valve["startMs"]), float(valve["durationMs"]),
            self.server_time(local_now),
        )


# =========================
# Config
# =========================

def load_config(path: Optional[str] = None) -> dict:
    """Load the JSON config from disk, creating it with defaults if needed."""
    path = path or CONFIG_PATH
    if not os.path.exists(path):
        tmp = path + ".tmp"
        with open(tmp, "w") as f:
            json.dump(DEFAULT_CONFIG, f, indent=2)
        os.replace(tmp, path)
        return copy.deepcopy(DEFAULT_CONFIG)
    with open(path, "r") as f:
        cfg = json.load(f)
    # Merge missing top level keys
    for k, v in DEFAULT_CONFIG.items():
        if k not in cfg:
            cfg[k] = copy.deepcopy(v)
    for name, meta in DEFAULT_CONFIG["pins"].items():
        if name not in cfg["pins"]:
            cfg["pins"][name] = dict(meta)
    return cfg


# =========================
# Web (Flask)
# =========================

def build_app(orchestrator: ModeOrchestrator, synchronizer: Optional[StatusSynchronizer] = None) -> Flask:
    """Construct the Flask application exposing the control API."""
    app = Flask(__name__)
    app.orchestrator = orchestrator
    sync = synchronizer or StatusSynchronizer(orchestrator)

    @app.errorhandler(UnknownMode)
    def _unknown_mode(e):
        return jsonify({"ok": False, "message": str(e)}), 404

    @app.errorhandler(Busy)
    def _busy(e):
        return jsonify({"ok": False, "busy": True, "message": str(e)}), 409

    @app.errorhandler(InvalidEquipment)
    def _invalid_equipment(e):
        return jsonify({"ok": False, "message": str(e)}), 400

    @app.errorhandler(DriverFailure)
    def _driver_failure(e):
        return jsonify({"ok": False, "message": str(e)}), 500

    @app.get("/")
    def index():
        return redirect("/status")

    @app.get("/status")
    def api_status():
        return jsonify(sync.snapshot())

    @app.get("/modes")
    def api_modes():
        return jsonify({"ok": True, "modes": [m.summary() for m in orchestrator.catalog.sorted_modes()]})

    @app.get("/mode/<mode_key>")
    def api_mode(mode_key: str):
        orchestrator.request_switch(mode_key)
        return jsonify(sync.snapshot())

    @app.get("/spa/on")
    def api_spa_on():
        orchestrator.spa(True)
        return jsonify(sync.snapshot())

    @app.get("/spa/off")
    def api_spa_off():
        orchestrator.spa(False)
        return jsonify(sync.snapshot())

    @app.post("/equipment/<field_name>")
    def api_equipment(field_name: str):
        data = request.get_json(force=True, silent=True)
        if not isinstance(data, dict):
            data = {}
        orchestrator.manual_override(field_name, data.get("state"))
        return jsonify(sync.snapshot())

    @app.get("/simulator")
    def api_simulator():
        return jsonify({"ok": True, "simulator": orchestrator.driver.simulator})

    @app.post("/simulator")
    def api_simulator_toggle():
        data = request.get_json(force=True, silent=True)
        if not isinstance(data, dict):
            return jsonify({"ok": False, "message": "request body must be a JSON object"}), 400
        enabled = data.get("enabled")
        if not isinstance(enabled, bool):
            return jsonify({"ok": False, "message": "enabled field must be boolean"}), 400
        driver = orchestrator.driver
        if not orchestrator.set_simulator(enabled):
            return jsonify({
                "ok": False,
                "message": "Cannot disable simulator mode: GPIO hardware not available",
                "simulator": driver.simulator,
                "gpioHardwareAvailable": driver.hardware_available,
            }), 400
        return jsonify(sync.snapshot())

    return app


# =========================
# Remote helpers (requests)
# =========================

# Poll cadence for `watch`, matching the browser UI.
WATCH_BUSY_MS = 1000
WATCH_IDLE_MS = 3000
WATCH_RETRY_MS = 4000


def fetch_json(url: str) -> dict:
    """GET a controller endpoint and decode the JSON body.

    404 and 409 responses are raised as ControllerError with the server's
    message; other HTTP errors propagate from requests.
    """
    resp = requests.get(url, timeout=10, headers={"User-Agent": USER_AGENT})
    if resp.status_code in (404, 409):
        try:
            message = resp.json().get("message")
        except ValueError:
            message = None
        raise ControllerError(message or f"HTTP {resp.status_code}")
    resp.raise_for_status()
    return resp.json()


def format_status_line(snapshot: dict, percent: float) -> str:
    if snapshot.get("busy"):
        state = f"{snapshot.get('mode')} -> {snapshot.get('target')}"
    else:
        state = str(snapshot.get("mode"))
    line = f"{state:<24} valve {percent:5.1f}%"
    if snapshot.get("lastError"):
        line += f"  error: {snapshot['lastError']}"
    return line


def watch_status(base_url: str, interval: float = 0.5, limit: Optional[int] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], int] = now_ms) -> None:
    """Poll /status and print the valve position rendered locally.

    The server is polled every second while busy and every three seconds
    when idle; between polls the position is interpolated from the last
    timeline using the smoothed clock skew.
    """
    viewer = ViewerClock()
    snapshot = None
    next_poll = 0
    frames = 0
    url = base_url.rstrip("/") + "/status"
    while limit is None or frames < limit:
        local_now = clock()
        if local_now >= next_poll:
            try:
                snapshot = fetch_json(url)
                viewer.observe(snapshot["serverNow"], clock())
                next_poll = local_now + (WATCH_BUSY_MS if snapshot.get("busy") else WATCH_IDLE_MS)
            except (requests.RequestException, ControllerError, ValueError, KeyError) as e:
                logger.warning("[Watch] Status poll failed: %s", e)
                next_poll = local_now + WATCH_RETRY_MS
        if snapshot is not None:
            print(format_status_line(snapshot, viewer.render_percent(snapshot, clock())))
        frames += 1
        sleep(interval)


# Helpers to run system commands (systemctl)
def run_cmd(cmd: List[str]) -> subprocess.CompletedProcess:
    return subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)


def print_info():
    print(r"""
POOL CONTROLLER - QUICK MANUAL
==============================

Run the server (GPIO + HTTP API):
  python3 pool_controller.py web [--host 0.0.0.0] [--port 8080]

Talk to a running server:
  python3 pool_controller.py status [--url http://pi:8080]
  python3 pool_controller.py mode spa
  python3 pool_controller.py watch            # live valve position

Local catalog:
  python3 pool_controller.py modes

HTTP API:
  GET  /status                 full status incl. valve timeline + serverNow
  GET  /modes                  sorted mode list
  GET  /mode/<key>             start switching (404 unknown, 409 busy)
  GET  /spa/on, /spa/off       shortcuts for spa / auto
  POST /equipment/<field>      {"state": "..."}  manual override (service)
  GET|POST /simulator          {"enabled": true|false}

Environment:
  POOL_HOST, PORT              bind address for `web`
  SIMULATOR_MODE=true          never touch GPIO; log writes only
  POOL_CONTROLLER_URL          default --url for remote commands

Modes live in modes/*.json; config.json is created next to this script on
first run.  Nothing else is persisted: every boot starts de-energised.
""")


def main(argv: Optional[List[str]] = None):
    cfg = load_config()

    parser = argparse.ArgumentParser(description="GPIO pool/spa controller")
    sub = parser.add_subparsers(dest="cmd")
    parser.add_argument("-info", action="store_true", help="Show usage manual")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    default_url = os.environ.get(
        "POOL_CONTROLLER_URL", f"http://127.0.0.1:{cfg.get('web', {}).get('port', 8080)}"
    )

    # web command
    p_web = sub.add_parser("web", help="Run the HTTP API and drive the relays")
    p_web.add_argument("--host", default=os.environ.get("POOL_HOST", cfg.get("web", {}).get("host", "0.0.0.0")))
    p_web.add_argument("--port", type=int, default=int(os.environ.get("PORT", cfg.get("web", {}).get("port", 8080))))

    sub.add_parser("modes", help="List the local mode catalog")

    p_status = sub.add_parser("status", help="Show status of a running server")
    p_status.add_argument("--url", default=default_url)

    p_mode = sub.add_parser("mode", help="Switch a running server to a mode")
    p_mode.add_argument("key")
    p_mode.add_argument("--url", default=default_url)

    p_watch = sub.add_parser("watch", help="Follow the valve position live")
    p_watch.add_argument("--url", default=default_url)
    p_watch.add_argument("--interval", type=float, default=0.5, help="Seconds between rendered lines")

    p_srv = sub.add_parser("service", help="Manage systemd service")
    srv_sub = p_srv.add_subparsers(dest="srv_cmd")
    srv_sub.add_parser("install")
    srv_sub.add_parser("uninstall")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.info or args.cmd is None:
        print_info()
        return

    if args.cmd == "web":
        try:
            catalog = ModeCatalog.load_directory(MODES_DIR)
        except (OSError, ValueError) as e:
            logger.error("Failed to load modes: %s", e)
            sys.exit(1)
        logger.info("Loaded %d modes: %s", len(catalog), ", ".join(m.name for m in catalog.sorted_modes()))
        simulator = os.environ.get("SIMULATOR_MODE", "").lower() == "true"
        if simulator:
            logger.info("Simulator mode explicitly enabled via SIMULATOR_MODE")
        driver = build_driver(cfg, simulator=simulator)
        orchestrator = ModeOrchestrator(
            catalog,
            driver,
            valve_wait_ms=int(cfg.get("valve_wait_ms", VALVE_WAIT_MS)),
            default_mode=cfg.get("default_mode", "auto"),
            safe_mode=cfg.get("safe_mode", "service"),
        )
        orchestrator.start()
        app = build_app(orchestrator)
        logger.info("Pool control server listening on %s:%s", args.host, args.port)
        try:
            app.run(host=args.host, port=args.port)
        finally:
            logger.info("Cleaning up GPIO (setting all LOW)")
            orchestrator.shutdown()
            driver.close()
        return

    if args.cmd == "modes":
        catalog = ModeCatalog.load_directory(MODES_DIR)
        for m in catalog.sorted_modes():
            eq = m.equipment
            print(f"  {m.key:<12} {m.name:<16} pump={eq.pump.value}/{eq.pump_speed.value} "
                  f"valves={eq.inflow_valve.value}/{eq.outflow_valve.value} heater={eq.heater.value}")
        return

    if args.cmd in ("status", "mode"):
        path = "/status" if args.cmd == "status" else f"/mode/{args.key}"
        try:
            data = fetch_json(args.url.rstrip("/") + path)
        except (ControllerError, requests.RequestException) as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        print(format_status_line(data, float(data["valve"]["percent"])))
        eq = data.get("equipment", {})
        print("Equipment: " + ", ".join(f"{k}={v}" for k, v in eq.items()))
        return

    if args.cmd == "watch":
        try:
            watch_status(args.url, interval=args.interval)
        except KeyboardInterrupt:
            pass
        return

    if args.cmd == "service":
        service_name = "pool-controller"
        service_path = f"/etc/systemd/system/{service_name}.service"
        if args.srv_cmd == "install":
            here = os.path.abspath(__file__)
            unit = f"""[Unit]
Description=GPIO Pool/Spa Controller
After=network.target

[Service]
Type=simple
ExecStart=/usr/bin/python3 {here} web --host {cfg['web']['host']} --port {cfg['web']['port']}
WorkingDirectory={os.path.dirname(here)}
Restart=on-failure
User=root

[Install]
WantedBy=multi-user.target
"""
            tmp = "/tmp/pool-controller.service.tmp"
            with open(tmp, "w") as f:
                f.write(unit)
            run_cmd(["sudo", "cp", tmp, service_path])
            run_cmd(["sudo", "systemctl", "daemon-reload"])
            print("Service installed. Enable with: sudo systemctl enable --now pool-controller")
            return
        if args.srv_cmd == "uninstall":
            run_cmd(["sudo", "systemctl", "disable", "--now", service_name])
            run_cmd(["sudo", "rm", "-f", service_path])
            run_cmd(["sudo", "systemctl", "daemon-reload"])
            print("Service removed.")
            return

    print_info()


if __name__ == "__main__":
    main()
