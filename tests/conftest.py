import logging

import pytest

from fan_control import ActuationFailed, FanMode, logger


class FakeSensor:
    """Hands out queued samples; exceptions in the queue are raised instead"""

    def __init__(self, samples, stop_event=None):
        self.samples = list(samples)
        self.stop_event = stop_event
        self.reads = 0

    def read(self):
        self.reads += 1
        value = self.samples.pop(0)
        if not self.samples and self.stop_event is not None:
            self.stop_event.set()
        if isinstance(value, Exception):
            raise value
        return value


class FakeControl:
    """Records every successful mode write"""

    def __init__(self, fail_modes=(), fail_times=None):
        self.writes = []
        self.attempts = []
        self.fail_modes = set(fail_modes)
        self.fail_times = fail_times

    def set_mode(self, mode):
        self.attempts.append(mode)
        if mode in self.fail_modes and (self.fail_times is None or self.fail_times > 0):
            if self.fail_times is not None:
                self.fail_times -= 1
            raise ActuationFailed(f"mode {int(mode)} rejected")
        self.writes.append(FanMode(mode))


@pytest.fixture
def control():
    return FakeControl()


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def sysfs(tmp_path):
    """Fake thermal zone and pwm_enable files"""
    zone = tmp_path / "temp"
    zone.write_text("52000\n")
    pwm_enable = tmp_path / "pwm1_enable"
    pwm_enable.write_text("2\n")
    return zone, pwm_enable


@pytest.fixture
def make_sensor():
    return FakeSensor


@pytest.fixture
def make_control():
    return FakeControl
