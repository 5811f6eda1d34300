"""
In-memory implementations of the ports.

SimulatedAudioDevice behaves like a minimal audio stack: volumes clamp to
[0, max], speaker changes notify routing subscribers, and every write is
appended to a journal (timestamped when a clock is supplied) so a run can be
inspected afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from voipfix.logging_config import get_logger
from voipfix.ports import (
    ActionFailed,
    AudioMode,
    AudioRoutePort,
    CallState,
    CallStatePort,
    KeyInjector,
    PortUnavailable,
    ProximityPort,
    Stream,
    Unsubscribe,
    VolumeDirection,
    VolumeKey,
)

logger = get_logger(__name__)

_DEFAULT_MAX_VOLUME = {Stream.VOICE_CALL: 5, Stream.MUSIC: 15}


@dataclass
class AudioWrite:
    at_ms: Optional[float]
    op: str
    args: Tuple[Any, ...] = ()


class _Listeners:
    """Callback registry returning unsubscribe closures."""

    def __init__(self) -> None:
        self._callbacks: List[Callable[..., None]] = []

    def add(self, callback: Callable[..., None]) -> Unsubscribe:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)
        return unsubscribe

    def emit(self, *args: Any) -> None:
        for callback in list(self._callbacks):
            callback(*args)

    def __len__(self) -> int:
        return len(self._callbacks)


class SimulatedAudioDevice(AudioRoutePort):
    def __init__(
        self,
        *,
        max_volume: Optional[Dict[Stream, int]] = None,
        volume: Optional[Dict[Stream, int]] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.max_volume = dict(_DEFAULT_MAX_VOLUME)
        if max_volume:
            self.max_volume.update(max_volume)
        self.volume = {stream: self.max_volume[stream] // 2 for stream in Stream}
        if volume:
            self.volume.update(volume)
        self.mode = AudioMode.NORMAL
        self.speaker_on = False
        self.active_streams: Set[Stream] = set()
        self.forced_routing: Optional[Tuple[str, str]] = None
        self.fail_forced_routing = False
        self.journal: List[AudioWrite] = []
        self._clock = clock
        self._routing = _Listeners()

    # -- reads ---------------------------------------------------------
    def get_mode(self) -> AudioMode:
        return self.mode

    def is_speaker_on(self) -> bool:
        return self.speaker_on

    def get_stream_volume(self, stream: Stream) -> int:
        return self.volume[stream]

    def get_stream_max_volume(self, stream: Stream) -> int:
        return self.max_volume[stream]

    def is_stream_active(self, stream: Stream) -> bool:
        return stream in self.active_streams

    # -- writes --------------------------------------------------------
    def set_mode(self, mode: AudioMode) -> None:
        self._record("set_mode", mode)
        self.mode = mode

    def set_speaker_on(self, on: bool) -> None:
        self._record("set_speaker_on", on)
        changed = on != self.speaker_on
        self.speaker_on = on
        if changed:
            self._routing.emit()

    def set_stream_volume(self, stream: Stream, volume: int) -> None:
        self._record("set_stream_volume", stream, volume)
        self.volume[stream] = self._clamp(stream, volume)

    def adjust_stream_volume(self, stream: Stream, direction: VolumeDirection) -> None:
        self._record("adjust_stream_volume", stream, direction)
        delta = 1 if direction is VolumeDirection.RAISE else -1
        self.volume[stream] = self._clamp(stream, self.volume[stream] + delta)

    def force_routing(self, use: str, policy: str) -> None:
        self._record("force_routing", use, policy)
        if self.fail_forced_routing:
            raise ActionFailed(f"force_routing({use}, {policy}) rejected by audio policy")
        self.forced_routing = (use, policy)

    def subscribe_routing(self, callback: Callable[[], None]) -> Unsubscribe:
        return self._routing.add(callback)

    # -- simulation controls -------------------------------------------
    def set_stream_active(self, stream: Stream, active: bool) -> None:
        if active:
            self.active_streams.add(stream)
        else:
            self.active_streams.discard(stream)

    def user_set_speaker(self, on: bool) -> None:
        """Speaker change initiated outside the controller (e.g. the in-call UI)."""
        changed = on != self.speaker_on
        self.speaker_on = on
        if changed:
            self._routing.emit()

    def writes(self, op: Optional[str] = None, since_ms: Optional[float] = None) -> List[AudioWrite]:
        return [
            w for w in self.journal
            if (op is None or w.op == op)
            and (since_ms is None or (w.at_ms is not None and w.at_ms > since_ms))
        ]

    @property
    def routing_subscribers(self) -> int:
        return len(self._routing)

    def _clamp(self, stream: Stream, volume: int) -> int:
        return max(0, min(self.max_volume[stream], volume))

    def _record(self, op: str, *args: Any) -> None:
        at = self._clock() if self._clock else None
        self.journal.append(AudioWrite(at, op, args))


class SimulatedCallState(CallStatePort):
    def __init__(self) -> None:
        self._listeners = _Listeners()

    def subscribe(self, callback: Callable[[CallState], None]) -> Unsubscribe:
        return self._listeners.add(callback)

    def emit(self, state: CallState) -> None:
        self._listeners.emit(state)

    @property
    def subscribers(self) -> int:
        return len(self._listeners)


class SimulatedProximity(ProximityPort):
    def __init__(self, available: bool = True) -> None:
        self.available = available
        self._listeners = _Listeners()

    def subscribe(self, callback: Callable[[bool], None]) -> Unsubscribe:
        if not self.available:
            raise PortUnavailable("Proximity sensor not available")
        return self._listeners.add(callback)

    def emit(self, near: bool) -> None:
        self._listeners.emit(near)

    @property
    def subscribers(self) -> int:
        return len(self._listeners)


@dataclass
class RecordingKeyInjector(KeyInjector):
    keys: List[VolumeKey] = field(default_factory=list)

    def inject(self, key: VolumeKey) -> None:
        self.keys.append(key)
        logger.debug("Injected key event", key=key.value)
