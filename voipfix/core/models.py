"""
Core data models for the audio-recovery controller.

CallSession and MediaPlaybackState are owned by the RecoveryController and
only mutated from the event loop. RecoveryStep/RecoveryTask are the
declarative units the ActionScheduler executes.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional
import uuid


class TaskFamily(Enum):
    """Logical families of scheduled work; each has its own generation counter."""
    SPEAKER_FIX = "speaker-fix"
    CALL_SETUP = "call-setup"
    MEDIA_FIX = "media-fix"
    # Self-restoring sequences (volume nudges, speaker toggles, mode round trips).
    # Never superseded by triggers so they always put audio back the way they found it.
    PERTURBATION = "perturbation"


Guard = Callable[[], bool]


@dataclass
class CallSession:
    """Recovery state for one logical VoIP call."""
    active: bool = False
    setup_phase: bool = False
    started_at_ms: float = 0.0
    speaker_on: bool = False
    # Speaker-change fix bookkeeping
    pending_fix: bool = False
    fix_deadline_ms: float = 0.0
    fix_applied: bool = False
    # Log correlation
    call_id: Optional[str] = None
    source: Optional[str] = None  # telephony | audio-mode

    def begin(self, now_ms: float, speaker_on: bool, source: str) -> None:
        self.active = True
        self.setup_phase = True
        self.started_at_ms = now_ms
        self.speaker_on = speaker_on
        self.pending_fix = False
        self.fix_deadline_ms = 0.0
        self.fix_applied = False
        self.call_id = uuid.uuid4().hex[:12]
        self.source = source

    def reset(self) -> None:
        self.active = False
        self.setup_phase = False
        self.pending_fix = False
        self.fix_applied = False
        self.fix_deadline_ms = 0.0
        self.call_id = None
        self.source = None

    def elapsed_ms(self, now_ms: float) -> float:
        return now_ms - self.started_at_ms

    def in_setup(self, now_ms: float, window_ms: float) -> bool:
        """True while aggressive setup-phase recovery is still permitted."""
        return self.active and self.setup_phase and self.elapsed_ms(now_ms) < window_ms

    def mark_speaker_change(self, speaker_on: bool, now_ms: float, debounce_ms: float) -> None:
        self.speaker_on = speaker_on
        self.pending_fix = True
        self.fix_deadline_ms = now_ms + debounce_ms
        self.fix_applied = False

    def mark_fixed(self) -> None:
        self.fix_applied = True
        self.pending_fix = False

    @property
    def needs_fix(self) -> bool:
        return self.active and self.pending_fix and not self.fix_applied


@dataclass
class MediaPlaybackState:
    """Whether a music-class stream is audible and where the proximity sensor stands."""
    playing: bool = False
    near: bool = False
    proximity_available: bool = True


@dataclass
class RecoveryStep:
    """One timed action of a RecoveryTask.

    Attributes:
        delay_ms: Offset from the moment the task is scheduled
        action: Zero-argument callable performing the corrective write(s)
        label: Human-readable name used in logs and metrics
        guard: Optional predicate re-checked right before the action runs
    """
    delay_ms: float
    action: Callable[[], None]
    label: str = ""
    guard: Optional[Guard] = None

    def __post_init__(self) -> None:
        if self.delay_ms < 0:
            raise ValueError(f"Step delay must be non-negative, got {self.delay_ms}")


@dataclass
class RecoveryTask:
    """An ordered sequence of steps bound to one generation of a family."""
    task_id: int
    family: TaskFamily
    generation: int
    steps: List[RecoveryStep]
    scheduled_at_ms: float
    guard: Optional[Guard] = None
    executed: int = 0
    skipped: int = 0
    failed: int = 0

    def is_valid(self) -> bool:
        """Evaluate the task-level validity predicate (no predicate means valid)."""
        return self.guard is None or bool(self.guard())
