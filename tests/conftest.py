import pytest

import pool_controller as pc


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start=1_700_000_000_000):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class FakeScheduler:
    """Records add_job calls instead of running them on a timer."""

    def __init__(self):
        self.jobs = []
        self.fail_next = None

    def start(self):
        pass

    def shutdown(self, wait=False):
        pass

    def get_jobs(self):
        return self.jobs

    def add_job(self, func, args=None, trigger=None, id=None, replace_existing=False, misfire_grace_time=None):
        if self.fail_next:
            exc, self.fail_next = self.fail_next, None
            raise exc
        self.jobs = [j for j in self.jobs if j["id"] != id]
        self.jobs.append({"func": func, "args": args or [], "trigger": trigger, "id": id,
                          "misfire_grace_time": misfire_grace_time})

    def run_pending(self):
        jobs, self.jobs = self.jobs, []
        for job in jobs:
            job["func"](*job["args"])


class RecordingDriver:
    """Stand-in relay driver that remembers every applied state.

    `fail_on(state, attempt)` may return True to make that apply call fail
    with DriverFailure.
    """

    def __init__(self, fail_on=None, hardware_available=False):
        self.fail_on = fail_on
        self.attempts = 0
        self.applied = []
        self.simulator = not hardware_available
        self.hardware_available = hardware_available
        self.closed = False
        self._state = pc.EquipmentState()

    def apply(self, state):
        attempt = self.attempts
        self.attempts += 1
        if self.fail_on and self.fail_on(state, attempt):
            raise pc.DriverFailure("relay board not responding")
        self.applied.append(state)
        self._state = state

    def current_state(self):
        return self._state

    def current_pin_levels(self):
        return pc.pin_levels_for(self._state)

    def set_simulator(self, enabled):
        if not enabled and not self.hardware_available:
            return False
        self.simulator = enabled
        return True

    def close(self):
        self.closed = True


def make_catalog():
    return pc.ModeCatalog([
        pc.ModeConfig.from_config("auto", {
            "name": "Auto", "order": 1,
            "equipment": {"pump": "on", "pumpSpeed": "low", "inflowValve": "pool", "outflowValve": "pool", "heater": "off"},
        }),
        pc.ModeConfig.from_config("spa", {
            "name": "Spa", "order": 2,
            "equipment": {"pump": "on", "pumpSpeed": "high", "inflowValve": "spa", "outflowValve": "spa", "heater": "on"},
        }),
        pc.ModeConfig.from_config("turbo-clean", {
            "name": "Turbo Clean", "order": 3,
            "equipment": {"pump": "on", "pumpSpeed": "high", "inflowValve": "pool", "outflowValve": "pool", "heater": "off"},
        }),
        pc.ModeConfig.from_config("service", {
            "name": "Service", "order": 4,
            "equipment": {"pump": "off", "pumpSpeed": "low", "inflowValve": "pool", "outflowValve": "pool", "heater": "off"},
        }),
    ])


@pytest.fixture
def catalog():
    return make_catalog()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def driver():
    return RecordingDriver()


@pytest.fixture
def orchestrator(catalog, driver, clock, scheduler):
    return pc.ModeOrchestrator(catalog, driver, valve_wait_ms=30_000, clock=clock, scheduler=scheduler)
