"""
VoIPFixService - wires the ports, event bus, scheduler and controller.

``start()`` subscribes to the ports and begins the periodic poll tick;
``stop()`` unsubscribes everything and cancels all pending scheduled work.
A missing proximity sensor puts the service in degraded mode instead of
failing startup.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from prometheus_client import start_http_server

from voipfix.config import AppConfig, load_config, validate_config
from voipfix.core.controller import RecoveryController
from voipfix.core.event_bus import EventBus
from voipfix.core.events import CallStateChanged, ProximityChanged, RoutingChanged
from voipfix.core.scheduler import ActionScheduler
from voipfix.core.timer import LoopTimer, Timer
from voipfix.logging_config import configure_logging, get_logger
from voipfix.ports import (
    AudioRoutePort,
    CallState,
    CallStatePort,
    KeyInjector,
    PortUnavailable,
    ProximityPort,
    Unsubscribe,
)

logger = get_logger(__name__)


class VoIPFixService:
    def __init__(
        self,
        config: AppConfig,
        audio: AudioRoutePort,
        call_state: CallStatePort,
        proximity: Optional[ProximityPort] = None,
        key_injector: Optional[KeyInjector] = None,
        timer: Optional[Timer] = None,
    ) -> None:
        self.config = config
        self.audio = audio
        self.call_state = call_state
        self.proximity = proximity
        self.key_injector = key_injector if config.key_injection else None
        self._timer = timer

        self.scheduler: Optional[ActionScheduler] = None
        self.controller: Optional[RecoveryController] = None
        self.bus: Optional[EventBus] = None
        self.degraded = False
        self._unsubscribers: List[Unsubscribe] = []

    @property
    def running(self) -> bool:
        return self.bus is not None and self.bus.running

    async def start(self) -> None:
        if not self.config.enabled:
            logger.info("VoIP fix disabled by configuration; not starting")
            return
        if self.running:
            logger.warning("VoIP fix service already running")
            return

        timer = self._timer or LoopTimer()
        self.scheduler = ActionScheduler(timer)
        self.controller = RecoveryController(
            self.audio,
            self.scheduler,
            timer,
            self.config.recovery,
            key_injector=self.key_injector,
        )
        self.bus = EventBus(self.controller.handle, self.config.recovery.poll_interval_ms)
        await self.bus.start()

        bus = self.bus
        self._unsubscribers.append(self.audio.subscribe_routing(lambda: bus.publish(RoutingChanged())))
        self._unsubscribers.append(self.call_state.subscribe(lambda state: self._on_call_state(bus, state)))
        self._subscribe_proximity()

        logger.info(
            "✅ VoIP fix service started",
            degraded=self.degraded,
            key_injection=self.key_injector is not None,
        )

    async def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            try:
                unsubscribe()
            except Exception as e:
                logger.warning("Failed to unsubscribe port listener", error=str(e))
        self._unsubscribers.clear()

        if self.scheduler is not None:
            self.scheduler.cancel_all()
        if self.bus is not None:
            await self.bus.stop()
            self.bus = None
        logger.info("VoIP fix service stopped")

    @staticmethod
    def _on_call_state(bus: EventBus, state: CallState) -> None:
        if state is CallState.RINGING:
            return
        bus.publish(CallStateChanged(active=state is CallState.OFFHOOK))

    def _subscribe_proximity(self) -> None:
        if self.proximity is None:
            self._enter_degraded("no proximity port configured")
            return
        bus = self.bus
        try:
            self._unsubscribers.append(self.proximity.subscribe(lambda near: bus.publish(ProximityChanged(near=near))))
            self.degraded = False
            logger.info("Proximity sensor registered")
        except PortUnavailable as e:
            self._enter_degraded(str(e))

    def _enter_degraded(self, reason: str) -> None:
        self.degraded = True
        self.controller.media.proximity_available = False
        logger.warning("Running without proximity sensor; media routing fixes disabled", reason=reason)


async def main(config_path: str = "config/voipfix.yaml") -> None:
    from voipfix.adapters.simulated import (
        RecordingKeyInjector,
        SimulatedAudioDevice,
        SimulatedCallState,
        SimulatedProximity,
    )

    config = load_config(config_path)
    level_name = str(config.logging.level).upper()
    configure_logging(log_level=getattr(logging, level_name, logging.INFO))

    errors, warnings = validate_config(config)
    if errors:
        logger.error("❌ Configuration validation FAILED", errors=errors, warnings=warnings)
        raise RuntimeError(f"Configuration errors: {errors}")
    if warnings:
        logger.warning("⚠️  Configuration warnings", warnings=warnings)

    if config.metrics.enabled:
        start_http_server(config.metrics.port, addr=config.metrics.host)
        logger.info("Metrics exposition started", host=config.metrics.host, port=config.metrics.port)

    logger.info("No platform audio backend bundled; driving the in-memory simulated device")
    service = VoIPFixService(
        config,
        SimulatedAudioDevice(),
        SimulatedCallState(),
        SimulatedProximity(),
        key_injector=RecordingKeyInjector(),
    )

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    await service.start()
    await shutdown_event.wait()
    await service.stop()


def run() -> None:
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        logger.info("VoIP fix service has shut down.")


if __name__ == "__main__":
    run()
