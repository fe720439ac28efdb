import datetime
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class HealthState(str, Enum):
    OK = "OK"
    DEGRADED = "DEGRADED"
    DOWN = "DOWN"
    UNKNOWN = "UNKNOWN"


STATE_LABELS = {
    HealthState.OK: "🟢 OK",
    HealthState.DEGRADED: "🟠 UNSTABLE",
    HealthState.DOWN: "🔴 INTERNET DOWN",
    HealthState.UNKNOWN: "⚪ UNKNOWN",
}


def state_label(state):
    return STATE_LABELS[HealthState(state)]


def utc_now_iso():
    # Millisecond precision, 'Z' suffix to match what dashboards parse
    now = datetime.datetime.now(datetime.timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class ProbeResult:
    success: bool
    target_url: str
    latency_ms: Optional[int] = None

    def to_dict(self):
        return {"ok": self.success, "url": self.target_url, "ms": self.latency_ms}


@dataclass(frozen=True)
class Gateway:
    id: Optional[str]
    name: Optional[str]
    model: Optional[str]
    type: Optional[str]

    @classmethod
    def from_device(cls, device):
        if not device:
            return None
        dev_id = device.get("id", device.get("_id"))
        return cls(id=dev_id, name=device.get("name"), model=device.get("model"), type=device.get("type"))

    def to_dict(self):
        return {"id": self.id, "name": self.name, "model": self.model, "type": self.type}


@dataclass(frozen=True)
class WanInterface:
    id: Optional[str]
    name: Optional[str]
    port: Optional[str]
    priority: Optional[float]
    load_balance: Optional[str]
    disabled: bool = False
    uptime: Optional[float] = None

    @classmethod
    def from_group(cls, group):
        port_info = group.get("port_info") or {}
        port = port_info.get("name") or port_info.get("ifname") or group.get("port")
        return cls(
            id=group.get("id"),
            name=group.get("name"),
            port=port,
            priority=_to_number(group.get("priority")),
            load_balance=group.get("load_balance_type") or group.get("wan_load_balance_type"),
            disabled=bool(port_info.get("disabled")),
            uptime=_to_number(group.get("uptime")),
        )

    def to_dict(self):
        return {
            "id": self.id, "name": self.name, "port": self.port, "priority": self.priority,
            "loadBalance": self.load_balance, "disabled": self.disabled, "uptime": self.uptime,
        }


@dataclass(frozen=True)
class WanVerdict:
    """Reconciled WAN link status: True (up), False (down) or None (unknown)."""
    up: Optional[bool]
    source: str = "none"
    detail: Dict[str, Any] = field(default_factory=dict)
    gateway: Optional[Gateway] = None

    def to_dict(self):
        return {"up": self.up, "source": self.source, **self.detail}


@dataclass(frozen=True)
class HistoryEntry:
    timestamp: str
    state: HealthState
    wan_up: Optional[bool]
    wan_detail: Optional[Dict[str, Any]]
    probe: ProbeResult
    gateway: Optional[Gateway]
    reason: str
    note: Optional[str] = None
    controller_error: Optional[str] = None

    def to_dict(self):
        return {
            "ts": self.timestamp,
            "state": self.state.value,
            "wanUp": self.wan_up,
            "wan": self.wan_detail,
            "probe": self.probe.to_dict(),
            "gateway": self.gateway.to_dict() if self.gateway else None,
            "reason": self.reason,
            "note": self.note,
            "controllerError": self.controller_error,
        }


def _to_number(value):
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None
