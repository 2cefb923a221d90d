import copy
import time

import pytest
from gpiozero.pins.mock import MockFactory

import pool_controller as pc

from conftest import make_catalog


@pytest.fixture
def live():
    factory = MockFactory()
    driver = pc.RelayDriver(copy.deepcopy(pc.DEFAULT_CONFIG["pins"]), pin_factory=factory)
    orch = pc.ModeOrchestrator(make_catalog(), driver, valve_wait_ms=100)
    orch.start()
    yield orch
    orch.shutdown()
    driver.close()
    factory.reset()


def wait_idle(orch, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not orch.status().busy:
            return orch.status()
        time.sleep(0.02)
    raise AssertionError("switch did not complete in time")


def test_travel_job_runs_on_real_scheduler(live):
    status = live.request_switch("spa")
    assert status.busy is True
    # turbo held back while the valves are still moving
    assert live.driver.devices["PUMP_TURBO"].is_active is False

    status = wait_idle(live)

    assert status.mode == "spa"
    assert status.last_error is None
    assert live.valve().percent == 100.0
    assert live.driver.devices["PUMP_TURBO"].is_active is True
    assert live.driver.devices["HEATER_SPA"].is_active is True


def test_back_to_pool_on_real_scheduler(live):
    live.request_switch("spa")
    wait_idle(live)

    live.request_switch("auto")
    status = wait_idle(live)

    assert status.mode == "auto"
    assert live.valve().percent == 0.0
    assert live.driver.devices["RELAY_INFLOW"].is_active is False
    assert live.driver.devices["PUMP"].is_active is True
