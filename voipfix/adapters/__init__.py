"""Port implementations."""

from voipfix.adapters.simulated import (
    AudioWrite,
    RecordingKeyInjector,
    SimulatedAudioDevice,
    SimulatedCallState,
    SimulatedProximity,
)

__all__ = [
    'AudioWrite',
    'RecordingKeyInjector',
    'SimulatedAudioDevice',
    'SimulatedCallState',
    'SimulatedProximity',
]
