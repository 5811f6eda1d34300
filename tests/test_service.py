"""
Tests for VoIPFixService wiring: port subscriptions, degraded mode and shutdown.

A ManualTimer is injected so scheduled recovery steps only run when the test
advances the clock; events still flow through the real asyncio EventBus.
"""

import pytest

from voipfix.adapters.simulated import (
    RecordingKeyInjector,
    SimulatedAudioDevice,
    SimulatedCallState,
    SimulatedProximity,
)
from voipfix.config.models import AppConfig, RecoveryConfig
from voipfix.core.models import TaskFamily
from voipfix.core.timer import ManualTimer
from voipfix.ports import CallState, Stream, VolumeKey
from voipfix.service import VoIPFixService


def _quiet_config(**kwargs):
    # Keep the real poll tick out of the way; tests drive time with the ManualTimer
    return AppConfig(recovery=RecoveryConfig(poll_interval_ms=60_000), **kwargs)


def _service(config=None, proximity=None, key_injector=None):
    timer = ManualTimer()
    device = SimulatedAudioDevice(clock=timer.now_ms)
    call_state = SimulatedCallState()
    if proximity is None:
        proximity = SimulatedProximity()
    service = VoIPFixService(
        config or _quiet_config(),
        device,
        call_state,
        proximity,
        key_injector=key_injector,
        timer=timer,
    )
    return service, device, call_state, proximity, timer


@pytest.mark.asyncio
async def test_start_subscribes_all_ports():
    service, device, call_state, proximity, _ = _service()

    await service.start()
    try:
        assert service.running
        assert not service.degraded
        assert device.routing_subscribers == 1
        assert call_state.subscribers == 1
        assert proximity.subscribers == 1
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_stop_unsubscribes_and_cancels_work():
    service, device, call_state, proximity, timer = _service()
    await service.start()
    call_state.emit(CallState.OFFHOOK)
    await service.bus.drain()
    assert service.scheduler.pending() > 0

    await service.stop()
    timer.advance_to(20000)

    assert not service.running
    assert device.routing_subscribers == 0
    assert call_state.subscribers == 0
    assert proximity.subscribers == 0
    assert service.scheduler.pending() == 0
    assert device.journal == []


@pytest.mark.asyncio
async def test_call_state_broadcasts_drive_controller():
    service, _, call_state, _, _ = _service()
    await service.start()
    try:
        call_state.emit(CallState.OFFHOOK)
        await service.bus.drain()
        assert service.controller.session.active

        call_state.emit(CallState.RINGING)
        await service.bus.drain()
        assert service.controller.session.active

        call_state.emit(CallState.IDLE)
        await service.bus.drain()
        assert not service.controller.session.active
    finally:
        await service.stop()


class _LateCallState(SimulatedCallState):
    """Keeps its callback past unsubscribe, like a platform thread already mid-delivery."""

    def subscribe(self, callback):
        self.callback = callback
        return super().subscribe(callback)


@pytest.mark.asyncio
async def test_call_state_delivered_after_stop_is_dropped():
    call_state = _LateCallState()
    timer = ManualTimer()
    device = SimulatedAudioDevice(clock=timer.now_ms)
    service = VoIPFixService(_quiet_config(), device, call_state, SimulatedProximity(), timer=timer)
    await service.start()
    await service.stop()

    call_state.callback(CallState.OFFHOOK)
    timer.advance_to(1000)

    assert not service.controller.session.active
    assert device.journal == []


@pytest.mark.asyncio
async def test_routing_change_reaches_controller():
    service, device, call_state, _, timer = _service()
    await service.start()
    try:
        call_state.emit(CallState.OFFHOOK)
        await service.bus.drain()
        timer.advance_to(6000)
        await service.bus.drain()

        device.user_set_speaker(not device.speaker_on)
        await service.bus.drain()

        assert TaskFamily.SPEAKER_FIX in service.controller.last_task
        assert service.controller.session.pending_fix
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_proximity_events_drive_media_fix():
    service, device, _, proximity, timer = _service()
    await service.start()
    try:
        device.set_stream_active(Stream.MUSIC, True)
        service.controller.on_media_playback_tick()

        proximity.emit(True)
        await service.bus.drain()
        timer.advance_to(0)

        assert service.controller.media.near
        assert [w.args for w in device.writes("set_speaker_on")] == [(False,)]
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_missing_proximity_sensor_degrades():
    service, _, call_state, _, _ = _service(proximity=SimulatedProximity(available=False))

    await service.start()
    try:
        assert service.running
        assert service.degraded
        assert not service.controller.media.proximity_available
        assert call_state.subscribers == 1
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_disabled_service_does_not_start():
    service, device, call_state, _, _ = _service(config=_quiet_config(enabled=False))

    await service.start()

    assert not service.running
    assert service.controller is None
    assert device.routing_subscribers == 0
    assert call_state.subscribers == 0
    await service.stop()


@pytest.mark.asyncio
async def test_key_injection_requires_config_flag():
    injector = RecordingKeyInjector()
    service, _, call_state, _, timer = _service(key_injector=injector)
    assert service.key_injector is None

    service, _, call_state, _, timer = _service(config=_quiet_config(key_injection=True), key_injector=injector)
    await service.start()
    try:
        call_state.emit(CallState.OFFHOOK)
        await service.bus.drain()
        timer.advance_to(260)

        assert injector.keys == [VolumeKey.VOLUME_UP, VolumeKey.VOLUME_DOWN]
    finally:
        await service.stop()
