"""
Hysteresis state machine for internet health.

    wanUp == False            -> DOWN immediately (link down is authoritative)
    probe fails               -> DEGRADED after N fails, DOWN after M fails
    probe succeeds            -> OK after K successes (immediately from UNKNOWN)
    controller query failed   -> UNKNOWN

Every update appends exactly one HistoryEntry, newest first.
"""
import datetime
import threading
from collections import deque
from dataclasses import dataclass

from .models import HealthState, HistoryEntry, state_label, utc_now_iso

WAN_LINK_DOWN = "WAN_LINK_DOWN"
PROBE_DOWN = "PROBE_DOWN"
PROBE_DEGRADED = "PROBE_DEGRADED"
PROBE_FAIL_SOFT = "PROBE_FAIL_SOFT"
PROBE_OK = "PROBE_OK"
PROBE_OK_SOFT = "PROBE_OK_SOFT"
CONTROLLER_ERROR = "CONTROLLER_ERROR"


@dataclass(frozen=True)
class Transition:
    prev: HealthState
    next: HealthState
    entry: HistoryEntry

    @property
    def changed(self):
        return self.prev != self.next


def _parse_ts(ts):
    return datetime.datetime.fromisoformat(ts.replace("Z", "+00:00"))


class HealthStateMachine:
    def __init__(self, degraded_after_fails=2, down_after_fails=4, ok_after_successes=2,
                 max_history=300, clock=utc_now_iso):
        if not 0 < degraded_after_fails <= down_after_fails:
            raise ValueError("Need 0 < degraded_after_fails <= down_after_fails")
        self.degraded_after_fails = degraded_after_fails
        self.down_after_fails = down_after_fails
        self.ok_after_successes = max(1, ok_after_successes)
        self.clock = clock

        self.state = HealthState.UNKNOWN
        self.fail_count = 0
        self.success_count = 0
        self._history = deque(maxlen=max(1, max_history))
        self._lock = threading.Lock()

    @property
    def history(self):
        with self._lock:
            return list(self._history)

    @property
    def last_entry(self):
        with self._lock:
            return self._history[0] if self._history else None

    def snapshot(self):
        """Current state plus the whole retained history, as plain dicts."""
        with self._lock:
            return {
                "state": self.state.value,
                "label": state_label(self.state),
                "history": [e.to_dict() for e in self._history],
            }

    def _timestamp(self):
        ts = self.clock()
        if not self._history:
            return ts
        head = self._history[0].timestamp
        if _parse_ts(ts) > _parse_ts(head):
            return ts
        # Wall clock went backwards (or two cycles in the same millisecond)
        bumped = _parse_ts(head) + datetime.timedelta(milliseconds=1)
        return bumped.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def _evaluate(self, wan_up, probe_ok):
        """Returns (next_state, reason, note) and updates the counters."""
        if wan_up is False:
            self.fail_count = 0
            self.success_count = 0
            return HealthState.DOWN, WAN_LINK_DOWN, None

        if not probe_ok:
            self.fail_count += 1
            self.success_count = 0
            note = f"failCount={self.fail_count}"
            if self.fail_count >= self.down_after_fails:
                return HealthState.DOWN, PROBE_DOWN, note
            if self.fail_count >= self.degraded_after_fails:
                return HealthState.DEGRADED, PROBE_DEGRADED, note
            return self.state, PROBE_FAIL_SOFT, note

        self.success_count += 1
        self.fail_count = 0
        note = f"okCount={self.success_count}"
        if self.state == HealthState.UNKNOWN or self.success_count >= self.ok_after_successes:
            return HealthState.OK, PROBE_OK, note
        return self.state, PROBE_OK_SOFT, note

    def update(self, wan_up, probe, wan_detail=None, gateway=None, controller_error=None):
        """Feeds one cycle's signals; returns the Transition it produced."""
        with self._lock:
            prev = self.state
            next_state, reason, note = self._evaluate(wan_up, probe.success)

            if controller_error and next_state != HealthState.UNKNOWN:
                note = f"{reason} {note}" if note else reason
                next_state, reason = HealthState.UNKNOWN, CONTROLLER_ERROR

            entry = HistoryEntry(
                timestamp=self._timestamp(),
                state=next_state,
                wan_up=wan_up,
                wan_detail=wan_detail,
                probe=probe,
                gateway=gateway,
                reason=reason,
                note=note,
                controller_error=controller_error,
            )
            self.state = next_state
            self._history.appendleft(entry)
            return Transition(prev=prev, next=next_state, entry=entry)
