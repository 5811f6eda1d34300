"""
Port abstractions for the platform capabilities the controller depends on.

The controller never talks to a concrete audio stack. Hosts provide
implementations of these ports; voipfix.adapters.simulated ships in-memory
versions used by the entry point and the tests.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable


class AudioMode(Enum):
    """Platform audio mode."""
    NORMAL = "normal"
    RINGTONE = "ringtone"
    IN_CALL = "in_call"                    # Circuit-switched telephony
    IN_COMMUNICATION = "in_communication"  # VoIP / chat apps


# Modes that mean "some call owns the audio path"
IN_CALL_MODES = frozenset({AudioMode.IN_CALL, AudioMode.IN_COMMUNICATION})


class Stream(Enum):
    VOICE_CALL = "voice_call"
    MUSIC = "music"


class VolumeDirection(Enum):
    RAISE = "raise"
    LOWER = "lower"


class VolumeKey(Enum):
    VOLUME_UP = "volume_up"
    VOLUME_DOWN = "volume_down"


class CallState(Enum):
    """States delivered by the telephony call-state broadcast."""
    IDLE = "idle"
    RINGING = "ringing"
    OFFHOOK = "offhook"


class PortUnavailable(RuntimeError):
    """A capability (e.g. the proximity sensor) is absent on this device."""


class ActionFailed(RuntimeError):
    """A corrective write to the audio stack failed."""


Unsubscribe = Callable[[], None]


class AudioRoutePort(ABC):
    """Audio routing, volume and mode control surface."""

    @abstractmethod
    def get_mode(self) -> AudioMode: ...

    @abstractmethod
    def set_mode(self, mode: AudioMode) -> None: ...

    @abstractmethod
    def is_speaker_on(self) -> bool: ...

    @abstractmethod
    def set_speaker_on(self, on: bool) -> None: ...

    @abstractmethod
    def get_stream_volume(self, stream: Stream) -> int: ...

    @abstractmethod
    def get_stream_max_volume(self, stream: Stream) -> int: ...

    @abstractmethod
    def set_stream_volume(self, stream: Stream, volume: int) -> None: ...

    @abstractmethod
    def adjust_stream_volume(self, stream: Stream, direction: VolumeDirection) -> None: ...

    @abstractmethod
    def is_stream_active(self, stream: Stream) -> bool: ...

    @abstractmethod
    def force_routing(self, use: str, policy: str) -> None:
        """Low-level routing directive, e.g. ("communication", "speaker").

        Best-effort: implementations may raise ActionFailed.
        """

    @abstractmethod
    def subscribe_routing(self, callback: Callable[[], None]) -> Unsubscribe:
        """Invoke callback whenever the stream devices / routing change."""


class CallStatePort(ABC):
    @abstractmethod
    def subscribe(self, callback: Callable[[CallState], None]) -> Unsubscribe: ...


class ProximityPort(ABC):
    @abstractmethod
    def subscribe(self, callback: Callable[[bool], None]) -> Unsubscribe:
        """Deliver True (near) / False (far) on threshold crossings.

        Raises:
            PortUnavailable: if the device has no proximity sensor
        """


class KeyInjector(ABC):
    """Optional capability to inject synthetic hardware key presses."""

    @abstractmethod
    def inject(self, key: VolumeKey) -> None: ...
