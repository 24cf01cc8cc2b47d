"""Data classes tracking the runtime state of devices and servers."""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class PowerState(str, enum.Enum):
    ON = "on"
    OFF = "off"


class ActionPhase(str, enum.Enum):
    """What the dispatcher is currently doing to a server."""
    IDLE = "idle"
    WAKING_UP = "waking_up"
    SHUTTING_DOWN = "shutting_down"


@dataclass
class ReachabilityRecord:
    """Last probe outcome of a single device."""
    device_id: str
    reachable: bool = False
    last_seen: Optional[float] = None          # Monotonic seconds of the last successful probe
    last_seen_date: Optional[datetime] = None  # Same instant, UTC wall clock (for status output)

    def is_reachable_at(self, now: float, timeout: float) -> bool:
        """Staleness-adjusted reachability: a stale 'reachable' flag counts as unreachable."""
        if not self.reachable or self.last_seen is None:
            return False
        return now - self.last_seen <= timeout


@dataclass(frozen=True)
class OverrideFlags:
    """Manual force-on / force-off flags of one server."""
    always_on: bool = False
    always_off: bool = False


@dataclass
class ServerState:
    """Dispatcher bookkeeping for one controllable server."""
    server_id: str
    actual: PowerState = PowerState.OFF
    phase: ActionPhase = ActionPhase.IDLE
    mismatch_since: Optional[float] = None  # When desired != actual was first observed
    degraded: bool = False                  # Last action could not be confirmed
    last_error: Optional[str] = None
    last_error_kind: Optional[str] = None
    last_action: Optional[str] = None      # "wakeup" or "shutdown"
    last_action_date: Optional[datetime] = None
