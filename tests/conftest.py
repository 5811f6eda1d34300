import pytest

from voipfix.adapters.simulated import SimulatedAudioDevice
from voipfix.core.controller import RecoveryController
from voipfix.core.scheduler import ActionScheduler
from voipfix.core.timer import ManualTimer


@pytest.fixture
def timer():
    return ManualTimer()


@pytest.fixture
def device(timer):
    return SimulatedAudioDevice(clock=timer.now_ms)


@pytest.fixture
def scheduler(timer):
    return ActionScheduler(timer)


@pytest.fixture
def controller(device, scheduler, timer):
    return RecoveryController(device, scheduler, timer)
