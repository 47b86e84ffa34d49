from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from models import DeviceState, DeviceValue, LivenessEntry, UpdateSource, utcnow
from logger import get_logger

state_logger    = get_logger('state')
liveness_logger = get_logger('liveness')

class DeviceStateStore:
    """
    Authoritative record of the single logical device.
    Not synchronized on its own: the coordinator serializes every call.
    """

    def __init__(
        self
        , initial_value : DeviceValue = DeviceValue.off
        , clock         : Callable[[], datetime] = utcnow
    ):
        self._state     = DeviceState(
            value       = initial_value
            , updated_at= clock()
            , source    = UpdateSource.command
        )
        self.counters   : Dict[str, int] = {
            "commands_applied"  : 0,
            "reports_accepted"  : 0,
            "reports_stale"     : 0,
        }

    def current(self) -> DeviceState:
        return self._state

    def apply_command(self, value: DeviceValue, at: datetime) -> DeviceState:
        """
        Commands always win and take their own timestamp, even one earlier
        than the stored write
        """
        previous        = self._state
        self._state     = DeviceState(
            value       = value
            , updated_at= at
            , source    = UpdateSource.command
        )
        self.counters["commands_applied"] += 1
        state_logger.info(
            f"Command applied: {previous.value.value} → {value.value} at {self._state.updated_at.isoformat()}"
        )
        return self._state

    def apply_device_report(self, value: DeviceValue, at: datetime) -> bool:
        """Returns False when the report is older than the stored write and was ignored"""
        previous = self._state
        if at < previous.updated_at:
            self.counters["reports_stale"] += 1
            state_logger.warning(
                f"Stale device report ignored: {value.value} at {at.isoformat()} "
                f"is older than {previous.source.value} write at {previous.updated_at.isoformat()}"
            )
            return False

        self._state     = DeviceState(
            value       = value
            , updated_at= at
            , source    = UpdateSource.device_report
        )
        self.counters["reports_accepted"] += 1
        state_logger.info(
            f"Device report applied: {previous.value.value} → {value.value} at {at.isoformat()}"
        )
        return True

class LivenessRegistry:
    """
    Last heartbeat per device id. Stale entries are evicted lazily on every
    read; sweep_stale can also be driven by a periodic task.
    """

    def __init__(
        self
        , window_seconds    : float = 300
        , clock             : Callable[[], datetime] = utcnow
    ):
        self.window         = timedelta(seconds=window_seconds)
        self._clock         = clock
        self._entries       : Dict[str, datetime] = {}
        self.counters       : Dict[str, int] = {
            "heartbeats_recorded"   : 0,
            "heartbeats_stale"      : 0,
            "evictions"             : 0,
        }

    def record_heartbeat(self, device_id: str, at: datetime) -> bool:
        last_seen = self._entries.get(device_id)
        if last_seen is not None and at < last_seen:
            self.counters["heartbeats_stale"] += 1
            liveness_logger.debug(
                f"Out of order heartbeat from {device_id} ignored ({at.isoformat()} < {last_seen.isoformat()})"
            )
            return False

        self._entries[device_id] = at
        self.counters["heartbeats_recorded"] += 1
        if last_seen is None:
            liveness_logger.info(f"Device active: {device_id}. Total: {len(self._entries)}")
        return True

    def sweep_stale(
        self
        , now       : Optional[datetime] = None
        , window    : Optional[timedelta] = None
    ) -> List[str]:
        now     = now or self._clock()
        window  = window if window is not None else self.window

        evicted = [
            device_id for device_id, last_seen in self._entries.items()
            if now - last_seen > window
        ]
        for device_id in evicted:
            del self._entries[device_id]
            self.counters["evictions"] += 1
            liveness_logger.warning(f"Device {device_id} removed after {window.total_seconds():g}s without heartbeat")

        return evicted

    def count(self) -> int:
        self.sweep_stale()
        return len(self._entries)

    def active_devices(self) -> Set[str]:
        self.sweep_stale()
        return set(self._entries)

    def entries(self) -> List[LivenessEntry]:
        self.sweep_stale()
        return [
            LivenessEntry(device_id=device_id, last_heartbeat_at=last_seen)
            for device_id, last_seen in self._entries.items()
        ]
