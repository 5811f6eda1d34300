"""
ActionScheduler - declarative, generation-versioned execution of timed steps.

Every step is queued with the generation of its family captured at schedule
time. Superseding a family bumps the counter; stale steps become no-ops when
they come due. A single timer is armed for the earliest pending step so the
ordering guarantee (earlier target time first, ties in scheduling order)
does not depend on the timer facility's tie-breaking.
"""

from __future__ import annotations

import heapq
import itertools
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from prometheus_client import Counter

from voipfix.core.models import Guard, RecoveryStep, RecoveryTask, TaskFamily
from voipfix.core.timer import Timer, TimerHandle
from voipfix.logging_config import get_logger

logger = get_logger(__name__)

_STEPS_SCHEDULED = Counter(
    "voipfix_steps_scheduled_total",
    "Recovery steps queued, by task family",
    ["family"],
)
_STEP_OUTCOMES = Counter(
    "voipfix_step_outcomes_total",
    "Recovery step outcomes at fire time (executed, superseded, guarded, failed)",
    ["family", "outcome"],
)


@dataclass(order=True)
class _Pending:
    due_ms: float
    seq: int
    task: RecoveryTask = field(compare=False)
    step: RecoveryStep = field(compare=False)


class ActionScheduler:
    """Executes RecoveryTasks on a Timer with supersede-by-generation cancellation."""

    def __init__(self, timer: Timer) -> None:
        self._timer = timer
        self._queue: List[_Pending] = []
        self._generations: Dict[TaskFamily, int] = {family: 0 for family in TaskFamily}
        self._seq = itertools.count()
        self._task_ids = itertools.count(1)
        self._armed: Optional[TimerHandle] = None
        self._armed_due: Optional[float] = None
        self._firing = False

    # ------------------------------------------------------------------
    # Generations
    # ------------------------------------------------------------------
    def generation(self, family: TaskFamily) -> int:
        return self._generations[family]

    def supersede(self, family: TaskFamily) -> int:
        """Invalidate every step already scheduled for ``family``."""
        self._generations[family] += 1
        logger.debug("Family superseded", family=family.value, generation=self._generations[family])
        return self._generations[family]

    def is_current(self, task: RecoveryTask) -> bool:
        return task.generation == self._generations[task.family]

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def schedule(
        self,
        family: TaskFamily,
        steps: Iterable[RecoveryStep],
        *,
        guard: Optional[Guard] = None,
    ) -> RecoveryTask:
        """Queue ``steps`` relative to now under the family's current generation."""
        now = self._timer.now_ms()
        # Stable sort keeps declaration order for steps sharing an offset
        ordered = sorted(steps, key=lambda s: s.delay_ms)
        task = RecoveryTask(
            task_id=next(self._task_ids),
            family=family,
            generation=self._generations[family],
            steps=ordered,
            scheduled_at_ms=now,
            guard=guard,
        )
        for step in ordered:
            heapq.heappush(self._queue, _Pending(now + step.delay_ms, next(self._seq), task, step))
        if ordered:
            _STEPS_SCHEDULED.labels(family=family.value).inc(len(ordered))
            logger.debug(
                "Recovery task scheduled",
                family=family.value,
                task_id=task.task_id,
                generation=task.generation,
                offsets_ms=[s.delay_ms for s in ordered],
            )
        self._arm()
        return task

    def replace(
        self,
        family: TaskFamily,
        steps: Iterable[RecoveryStep],
        *,
        guard: Optional[Guard] = None,
    ) -> RecoveryTask:
        """Supersede ``family`` and schedule ``steps`` as its newest generation."""
        self.supersede(family)
        return self.schedule(family, steps, guard=guard)

    def cancel_all(self) -> None:
        """Supersede every family and drop all queued steps."""
        for family in TaskFamily:
            self._generations[family] += 1
        dropped = len(self._queue)
        self._queue.clear()
        self._disarm()
        logger.info("All scheduled recovery work cancelled", dropped_steps=dropped)

    def pending(self, family: Optional[TaskFamily] = None) -> int:
        """Number of queued steps that would still run (ignoring guards)."""
        return sum(
            1 for p in self._queue
            if self.is_current(p.task) and (family is None or p.task.family is family)
        )

    # ------------------------------------------------------------------
    # Timer plumbing
    # ------------------------------------------------------------------
    def _arm(self) -> None:
        if self._firing:
            # _fire re-arms once it has drained everything that is due
            return
        if not self._queue:
            self._disarm()
            return
        due = self._queue[0].due_ms
        if self._armed is not None and self._armed_due is not None and self._armed_due <= due:
            return
        self._disarm()
        self._armed_due = due
        self._armed = self._timer.after(due - self._timer.now_ms(), self._fire)

    def _disarm(self) -> None:
        if self._armed is not None:
            self._armed.cancel()
        self._armed = None
        self._armed_due = None

    def _fire(self) -> None:
        self._armed = None
        self._armed_due = None
        self._firing = True
        try:
            while self._queue and self._queue[0].due_ms <= self._timer.now_ms():
                pending = heapq.heappop(self._queue)
                self._run(pending)
        finally:
            self._firing = False
        self._arm()

    def _run(self, pending: _Pending) -> None:
        task, step = pending.task, pending.step
        family = task.family.value

        if not self.is_current(task):
            task.skipped += 1
            _STEP_OUTCOMES.labels(family=family, outcome="superseded").inc()
            logger.debug("Superseded step skipped", family=family, task_id=task.task_id, step=step.label)
            return

        try:
            allowed = task.is_valid() and (step.guard is None or bool(step.guard()))
        except Exception as e:
            allowed = False
            logger.warning("Step guard raised; skipping step", family=family, step=step.label, error=str(e))

        if not allowed:
            task.skipped += 1
            _STEP_OUTCOMES.labels(family=family, outcome="guarded").inc()
            logger.debug("Guarded step skipped", family=family, task_id=task.task_id, step=step.label)
            return

        try:
            step.action()
        except Exception as e:
            # A failed write never aborts the rest of the sequence
            task.failed += 1
            _STEP_OUTCOMES.labels(family=family, outcome="failed").inc()
            logger.warning(
                "Recovery step failed; continuing sequence",
                family=family,
                task_id=task.task_id,
                step=step.label,
                error=str(e),
                exc_info=True,
            )
            return

        task.executed += 1
        _STEP_OUTCOMES.labels(family=family, outcome="executed").inc()
        logger.debug("Recovery step executed", family=family, task_id=task.task_id, step=step.label)
