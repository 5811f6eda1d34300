"""
RecoveryController - call/media audio-recovery state machine.

Tracks the call lifecycle (Idle -> Active(setup) -> Active(steady) -> Idle),
speaker routing during calls, and media playback against the proximity
sensor. It reads the AudioRoutePort to make decisions; every corrective write
is expressed as RecoverySteps and handed to the ActionScheduler so it can be
sequenced and superseded.

All public handlers must be called from the single serialized context (the
event loop driving the EventBus and the scheduler's timer).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Type

from prometheus_client import Counter, Gauge

from voipfix.config.models import RecoveryConfig
from voipfix.core.events import (
    CallStateChanged,
    Event,
    PollTick,
    ProximityChanged,
    RoutingChanged,
)
from voipfix.core.models import CallSession, Guard, MediaPlaybackState, RecoveryStep, RecoveryTask, TaskFamily
from voipfix.core.scheduler import ActionScheduler
from voipfix.core.timer import Timer
from voipfix.logging_config import get_logger, set_call_id
from voipfix.ports import (
    IN_CALL_MODES,
    AudioMode,
    AudioRoutePort,
    KeyInjector,
    Stream,
    VolumeDirection,
    VolumeKey,
)

logger = get_logger(__name__)

_FIXES_APPLIED = Counter(
    "voipfix_fixes_applied_total",
    "Corrective sequences started, by kind",
    ["kind"],
)
_CALL_ACTIVE = Gauge(
    "voipfix_call_active",
    "1 while a VoIP call is being tracked",
)
_MEDIA_PLAYING = Gauge(
    "voipfix_media_playing",
    "1 while a music-class stream is active",
)


def volume_nudge_direction(volume: int, max_volume: int) -> VolumeDirection:
    """Nudge away from the nearer edge: lower when above half of max, else raise."""
    if volume > max_volume / 2:
        return VolumeDirection.LOWER
    return VolumeDirection.RAISE


@dataclass
class _Perturbation:
    """One self-restoring sequence.

    Perturbing steps re-check ``guard`` when they fire; the restore step is
    unguarded and only writes if at least one perturbing step actually ran.
    """
    guard: Optional[Guard] = None
    applied: bool = False

    def allowed(self) -> bool:
        return self.guard is None or bool(self.guard())

    def perturb(self, action: Callable[[], None]) -> Callable[[], None]:
        def run() -> None:
            action()
            self.applied = True
        return run


class RecoveryController:
    def __init__(
        self,
        audio: AudioRoutePort,
        scheduler: ActionScheduler,
        timer: Timer,
        config: Optional[RecoveryConfig] = None,
        key_injector: Optional[KeyInjector] = None,
    ) -> None:
        self.audio = audio
        self.scheduler = scheduler
        self.timer = timer
        self.config = config or RecoveryConfig()
        self.key_injector = key_injector

        self.session = CallSession()
        self.media = MediaPlaybackState()

        # Until these instants the controller ignores observations caused by its own writes
        self._mode_settle_until_ms = float("-inf")
        self._route_settle_until_ms = float("-inf")

        # Volume each stream returns to while self-restoring sequences are in flight: [volume, holders]
        self._baselines: Dict[Stream, List[int]] = {}

        # Newest task per trigger family, for introspection
        self.last_task: Dict[TaskFamily, RecoveryTask] = {}

        self._handlers: Dict[Type[Event], Callable[[Event], None]] = {
            CallStateChanged: lambda e: self.on_call_state_changed(e.active, e.at_ms),
            RoutingChanged: lambda e: self.on_routing_changed(),
            ProximityChanged: lambda e: self.on_proximity_changed(e.near),
            PollTick: lambda e: self.poll(),
        }

    # ------------------------------------------------------------------
    # Event entry points
    # ------------------------------------------------------------------
    def handle(self, event: Event) -> None:
        """Dispatch one event from the bus to its handler."""
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.warning("Unhandled event type", event_type=type(event).__name__)
            return
        handler(event)

    def poll(self) -> None:
        """Periodic tick: audio-mode inference, pending fix check, media playback.

        Each check runs on its own so a failing port read only costs that check.
        """
        for check in (self.on_audio_mode_tick, self.on_poll_tick, self.on_media_playback_tick):
            try:
                check()
            except Exception as e:
                logger.warning(
                    "Poll check failed; continuing with remaining checks",
                    check=check.__name__,
                    error=str(e),
                    exc_info=True,
                )

    def on_call_state_changed(self, is_active: bool, now_ms: Optional[float] = None, *, source: str = "telephony") -> None:
        now = self.timer.now_ms() if now_ms is None else now_ms
        if is_active:
            if self.session.active:
                logger.debug("Call already active; ignoring repeated start", source=source)
                return
            self._start_call(now, source)
        else:
            if not self.session.active:
                logger.debug("No active call; ignoring call end", source=source)
                return
            self._end_call(source)

    def on_audio_mode_tick(self) -> None:
        """Infer call start/end from the audio mode when no broadcast arrived."""
        now = self.timer.now_ms()
        if now < self._mode_settle_until_ms:
            logger.debug("Audio mode settling after forced change; skipping inference")
            return

        mode = self.audio.get_mode()
        if mode is AudioMode.IN_COMMUNICATION:
            if not self.session.active:
                logger.info("VoIP activity detected via audio mode")
                self.on_call_state_changed(True, now, source="audio-mode")
            else:
                self._check_speaker_route(now, origin="poll")
        elif self.session.active and mode not in IN_CALL_MODES:
            logger.info("VoIP activity ended (audio mode left call modes)", mode=mode.value)
            self.on_call_state_changed(False, now, source="audio-mode")

    def on_routing_changed(self) -> None:
        if not self.session.active:
            return
        self._check_speaker_route(self.timer.now_ms(), origin="routing")

    def on_poll_tick(self) -> None:
        """Apply the single-shot fix once the debounce has passed, independent of the burst."""
        if not self.session.needs_fix:
            return
        if self.timer.now_ms() >= self.session.fix_deadline_ms:
            logger.info("Debounce elapsed with fix still pending; applying from poll")
            self.apply_fix()

    def on_proximity_changed(self, near: bool) -> None:
        if near == self.media.near:
            return
        self.media.near = near
        logger.info("Proximity changed", proximity="near" if near else "far")

        if not self._media_fix_allowed():
            return
        # Latest proximity wins: drop any delayed fix for the previous reading
        self._replace(
            TaskFamily.MEDIA_FIX,
            [RecoveryStep(0, lambda: self.apply_media_routing_fix(near), label="media-route")],
            guard=self._media_fix_allowed,
        )

    def on_media_playback_tick(self) -> None:
        playing = self.audio.is_stream_active(Stream.MUSIC)
        if playing == self.media.playing:
            return
        self.media.playing = playing
        _MEDIA_PLAYING.set(1 if playing else 0)
        logger.info("Media playback state changed", playing=playing)

        if not playing:
            self.scheduler.supersede(TaskFamily.MEDIA_FIX)
            return
        if self.media.near and self._media_fix_allowed():
            self._replace(
                TaskFamily.MEDIA_FIX,
                [RecoveryStep(
                    self.config.media_fix_delay_ms,
                    lambda: self.apply_media_routing_fix(True),
                    label="media-route-earpiece",
                )],
                guard=lambda: self._media_fix_allowed() and self.media.near,
            )

    # ------------------------------------------------------------------
    # Call lifecycle
    # ------------------------------------------------------------------
    def _start_call(self, now: float, source: str) -> None:
        self.session.begin(now, self.audio.is_speaker_on(), source)
        set_call_id(self.session.call_id)
        _CALL_ACTIVE.set(1)
        logger.info(
            "📞 Call active, initializing audio path",
            source=source,
            speaker_on=self.session.speaker_on,
        )
        self.schedule_initial_call_recovery()

    def _end_call(self, source: str) -> None:
        call_id = self.session.call_id
        self.session.reset()
        self.scheduler.supersede(TaskFamily.CALL_SETUP)
        self.scheduler.supersede(TaskFamily.SPEAKER_FIX)
        _CALL_ACTIVE.set(0)
        logger.info("Call ended, recovery state reset", source=source, call_id=call_id)
        set_call_id(None)

    def _end_setup_phase(self) -> None:
        self.session.setup_phase = False
        logger.info("Initial call setup phase complete")

    def _in_setup(self, window_ms: float) -> Callable[[], bool]:
        return lambda: self.session.in_setup(self.timer.now_ms(), window_ms)

    def schedule_initial_call_recovery(self) -> None:
        """Queue the aggressive setup-phase sequence for a freshly started call."""
        cfg = self.config
        setup_guard = self._in_setup(cfg.setup_window_ms)
        keys_guard = self._in_setup(cfg.key_simulation_window_ms)
        kick_at = 2 * cfg.mode_step_ms

        steps: List[RecoveryStep] = [
            RecoveryStep(0, self._reset_mode_and_volume, label="mode-normal"),
            RecoveryStep(cfg.mode_step_ms, lambda: self._force_mode(AudioMode.IN_COMMUNICATION), label="mode-in-communication"),
            RecoveryStep(kick_at, self._force_communication_routing, label="force-routing", guard=setup_guard),
            RecoveryStep(kick_at, self.simulate_volume_keys, label="key-simulation", guard=setup_guard),
            RecoveryStep(kick_at, self.toggle_speaker_fast, label="speaker-toggle", guard=setup_guard),
        ]
        for offset in cfg.setup_fix_offsets_ms:
            steps.append(RecoveryStep(offset, self.apply_aggressive_fix, label=f"aggressive-fix@{offset}", guard=setup_guard))
        for offset in cfg.key_simulation_offsets_ms:
            steps.append(RecoveryStep(
                kick_at + offset,
                self.simulate_volume_keys,
                label=f"key-simulation@{kick_at + offset}",
                guard=keys_guard,
            ))
        steps.append(RecoveryStep(cfg.setup_window_ms, self._end_setup_phase, label="setup-complete"))

        self._replace(TaskFamily.CALL_SETUP, steps, guard=lambda: self.session.active)

    # ------------------------------------------------------------------
    # Speaker routing during calls
    # ------------------------------------------------------------------
    def _check_speaker_route(self, now: float, origin: str) -> None:
        if now < self._route_settle_until_ms:
            return
        current = self.audio.is_speaker_on()
        if current == self.session.speaker_on:
            return

        self.session.mark_speaker_change(current, now, self.config.speaker_debounce_ms)
        logger.info("Speaker mode changed", speaker_on=current, origin=origin)

        self._replace(
            TaskFamily.SPEAKER_FIX,
            [
                RecoveryStep(offset, self.apply_fix, label=f"speaker-fix@{offset}")
                for offset in self.config.speaker_fix_offsets_ms
            ],
            guard=lambda: self.session.needs_fix,
        )

    # ------------------------------------------------------------------
    # Corrective actions
    # ------------------------------------------------------------------
    def apply_fix(self) -> None:
        """Steady-state single-shot fix: nudge the voice stream and restore it."""
        if not self.session.active:
            return
        stream = Stream.VOICE_CALL
        steps = self._volume_nudge_steps(stream, _Perturbation(self._call_guard()))
        self.scheduler.schedule(TaskFamily.PERTURBATION, steps)
        self.session.mark_fixed()
        _FIXES_APPLIED.labels(kind="speaker").inc()
        logger.info("Applying volume fix for VoIP audio", volume=self._observed_volume(stream))

    def apply_aggressive_fix(self) -> None:
        """Silence, jump to max, then settle on an audible target volume."""
        if not self.session.active:
            return
        stream = Stream.VOICE_CALL
        max_volume = self.audio.get_stream_max_volume(stream)
        target = max(self._hold_baseline(stream), max_volume // 2)
        # The target becomes the level every in-flight sequence restores to
        self._baselines[stream][0] = target
        step = self.config.aggressive_step_ms
        p = _Perturbation(self._call_guard())

        self.scheduler.schedule(TaskFamily.PERTURBATION, [
            RecoveryStep(0, p.perturb(lambda: self.audio.set_stream_volume(stream, 0)), label="aggressive-silence", guard=p.allowed),
            RecoveryStep(step, p.perturb(lambda: self.audio.set_stream_volume(stream, max_volume)), label="aggressive-max", guard=p.allowed),
            self._restore_step(2 * step, stream, p, label="aggressive-restore"),
        ])
        self.session.mark_fixed()
        _FIXES_APPLIED.labels(kind="aggressive").inc()
        logger.info(
            "Applying aggressive volume fix for initial call audio",
            elapsed_ms=round(self.session.elapsed_ms(self.timer.now_ms())),
            target=target,
        )

    def simulate_volume_keys(self) -> None:
        """Alternate raise/lower like a user tapping the keys, then restore the volume."""
        cfg = self.config
        stream = Stream.VOICE_CALL
        original = self._hold_baseline(stream)
        p = _Perturbation(self._call_guard())

        steps: List[RecoveryStep] = []
        for i in range(cfg.key_press_rounds):
            at = i * cfg.key_press_interval_ms
            steps.append(RecoveryStep(at, p.perturb(lambda: self.audio.adjust_stream_volume(stream, VolumeDirection.RAISE)), label="key-raise", guard=p.allowed))
            steps.append(RecoveryStep(at + cfg.key_release_offset_ms, p.perturb(lambda: self.audio.adjust_stream_volume(stream, VolumeDirection.LOWER)), label="key-lower", guard=p.allowed))
        if self.key_injector is not None:
            injector = self.key_injector
            steps.append(RecoveryStep(0, p.perturb(lambda: injector.inject(VolumeKey.VOLUME_UP)), label="inject-up", guard=p.allowed))
            steps.append(RecoveryStep(cfg.key_injection_gap_ms, p.perturb(lambda: injector.inject(VolumeKey.VOLUME_DOWN)), label="inject-down", guard=p.allowed))
        steps.append(self._restore_step(cfg.key_restore_delay_ms, stream, p, label="key-restore"))

        self.scheduler.schedule(TaskFamily.PERTURBATION, steps)
        _FIXES_APPLIED.labels(kind="key-simulation").inc()
        logger.info("Simulating volume key presses", original_volume=original, injection=self.key_injector is not None)

    def toggle_speaker_fast(self) -> None:
        """Flip speaker routing back and forth, ending on the original state."""
        cfg = self.config
        original = self.audio.is_speaker_on()
        count = cfg.speaker_toggle_count
        p = _Perturbation(self._call_guard())
        steps = [
            RecoveryStep(
                i * cfg.speaker_toggle_interval_ms,
                p.perturb(self._speaker_writer(original if i % 2 else not original)),
                label=f"speaker-toggle-{i + 1}",
                guard=p.allowed,
            )
            for i in range(count - 1)
        ]
        # Even count: the last write is always back to the original state
        steps.append(RecoveryStep(
            (count - 1) * cfg.speaker_toggle_interval_ms,
            self._speaker_restorer(original, p),
            label=f"speaker-toggle-{count}",
        ))
        self.scheduler.schedule(TaskFamily.PERTURBATION, steps)
        _FIXES_APPLIED.labels(kind="speaker-toggle").inc()

    def apply_media_routing_fix(self, route_to_earpiece: bool) -> None:
        """Re-route media and nudge the music stream so the pipeline re-evaluates routing."""
        cfg = self.config
        stream = Stream.MUSIC
        settle = cfg.media_settle_ms
        p = _Perturbation(lambda: not self.session.active)

        steps: List[RecoveryStep] = [
            RecoveryStep(0, p.perturb(lambda: self.audio.set_speaker_on(not route_to_earpiece)), label="media-speaker", guard=p.allowed),
        ]
        if route_to_earpiece:
            steps.append(RecoveryStep(0, p.perturb(lambda: self._force_mode(AudioMode.IN_COMMUNICATION)), label="media-mode-communication", guard=p.allowed))
            # A call that started meanwhile owns the mode
            steps.append(RecoveryStep(settle, lambda: self._force_mode(AudioMode.NORMAL), label="media-mode-normal", guard=p.allowed))
        steps.extend(self._volume_nudge_steps(stream, _Perturbation(p.guard), offset_ms=settle))

        self.scheduler.schedule(TaskFamily.PERTURBATION, steps)
        _FIXES_APPLIED.labels(kind="media").inc()
        logger.info("Applying media routing fix", route_to_earpiece=route_to_earpiece, volume=self._observed_volume(stream))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _replace(self, family: TaskFamily, steps: List[RecoveryStep], guard: Callable[[], bool]) -> RecoveryTask:
        task = self.scheduler.replace(family, steps, guard=guard)
        self.last_task[family] = task
        return task

    def _media_fix_allowed(self) -> bool:
        return self.media.proximity_available and self.media.playing and not self.session.active

    def _call_guard(self) -> Guard:
        """True while the call that scheduled a sequence is still the active one."""
        call_id = self.session.call_id
        return lambda: self.session.active and self.session.call_id == call_id

    def _hold_baseline(self, stream: Stream) -> int:
        """Volume to restore ``stream`` to, shared by every sequence in flight on it."""
        entry = self._baselines.get(stream)
        if entry is None:
            entry = self._baselines[stream] = [self.audio.get_stream_volume(stream), 0]
        entry[1] += 1
        return entry[0]

    def _observed_volume(self, stream: Stream) -> int:
        entry = self._baselines.get(stream)
        return entry[0] if entry is not None else self.audio.get_stream_volume(stream)

    def _restore_step(self, delay_ms: float, stream: Stream, perturbation: _Perturbation, label: str) -> RecoveryStep:
        def restore() -> None:
            entry = self._baselines[stream]
            entry[1] -= 1
            if entry[1] <= 0:
                del self._baselines[stream]
            if perturbation.applied:
                self.audio.set_stream_volume(stream, entry[0])
        return RecoveryStep(delay_ms, restore, label=label)

    def _volume_nudge_steps(self, stream: Stream, perturbation: _Perturbation, offset_ms: float = 0) -> List[RecoveryStep]:
        baseline = self._hold_baseline(stream)
        direction = volume_nudge_direction(baseline, self.audio.get_stream_max_volume(stream))
        return [
            RecoveryStep(
                offset_ms,
                perturbation.perturb(lambda: self.audio.adjust_stream_volume(stream, direction)),
                label=f"nudge-{direction.value}",
                guard=perturbation.allowed,
            ),
            self._restore_step(offset_ms + self.config.volume_restore_delay_ms, stream, perturbation, label="nudge-restore"),
        ]

    def _force_mode(self, mode: AudioMode) -> None:
        self._mode_settle_until_ms = self.timer.now_ms() + self.config.mode_settle_ms
        self.audio.set_mode(mode)

    def _speaker_writer(self, on: bool) -> Callable[[], None]:
        def write() -> None:
            self._route_settle_until_ms = self.timer.now_ms() + self.config.route_settle_ms
            self.audio.set_speaker_on(on)
        return write

    def _speaker_restorer(self, on: bool, perturbation: _Perturbation) -> Callable[[], None]:
        write = self._speaker_writer(on)

        def restore() -> None:
            if perturbation.applied and self.audio.is_speaker_on() != on:
                write()
        return restore

    def _reset_mode_and_volume(self) -> None:
        self._force_mode(AudioMode.NORMAL)
        max_volume = self.audio.get_stream_max_volume(Stream.VOICE_CALL)
        self.audio.set_stream_volume(Stream.VOICE_CALL, max(max_volume // 2, 1))

    def _force_communication_routing(self) -> None:
        policy = "speaker" if self.session.speaker_on else "none"
        self.audio.force_routing("communication", policy)
        logger.info("Applied low-level forced routing", policy=policy)
