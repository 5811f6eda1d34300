"""Events merged by the EventBus and consumed by the RecoveryController."""

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class CallStateChanged:
    active: bool
    at_ms: Optional[float] = None


@dataclass(frozen=True)
class RoutingChanged:
    pass


@dataclass(frozen=True)
class ProximityChanged:
    near: bool


@dataclass(frozen=True)
class PollTick:
    pass


Event = Union[CallStateChanged, RoutingChanged, ProximityChanged, PollTick]
