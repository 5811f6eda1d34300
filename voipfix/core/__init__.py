"""Core recovery logic: data models, scheduler, controller and event bus."""

from voipfix.core.controller import RecoveryController
from voipfix.core.event_bus import EventBus
from voipfix.core.models import CallSession, MediaPlaybackState, RecoveryStep, RecoveryTask, TaskFamily
from voipfix.core.scheduler import ActionScheduler

__all__ = [
    'ActionScheduler',
    'CallSession',
    'EventBus',
    'MediaPlaybackState',
    'RecoveryController',
    'RecoveryStep',
    'RecoveryTask',
    'TaskFamily',
]
