"""
WAN signal reconciliation.

Controller firmwares expose the WAN link status in many different shapes.
Each extractor below looks at one family of shapes and returns True/False
when it finds a definitive answer, or None when it has no opinion. The
extractors are applied in order and the first definitive answer wins.
"""
from .models import Gateway, WanInterface, WanVerdict, _to_number

GATEWAY_TYPES = ("gateway", "ugw", "uxg", "udm")
GATEWAY_MODEL_HINTS = ("USG", "UXG", "UDM")

UP_WORDS = ("up", "online", "connected", "ok")
DOWN_WORDS = ("down", "offline", "disconnected", "no_link")

ENVELOPE_KEYS = ("data", "results", "rows", "wan_network_groups", "wanNetworkGroups")


def unwrap_list(payload):
    """Returns the list inside a controller response envelope (or [])."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ENVELOPE_KEYS:
            if isinstance(payload.get(key), list):
                return payload[key]
    return []


def pick_gateway(devices):
    devices = [d for d in (devices or []) if isinstance(d, dict)]

    for d in devices:
        if str(d.get("type") or "").lower() in GATEWAY_TYPES:
            return d

    for d in devices:
        model = str(d.get("model") or "").upper()
        name = str(d.get("name") or "").upper()
        if any(h in model or h in name for h in GATEWAY_MODEL_HINTS):
            return d
        if "gateway" in str(d.get("productLine") or "").lower():
            return d
    return None


# --- device extractors ---

def _dig(obj, *keys):
    for key in keys:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


DIRECT_FIELDS = (
    ("uplink", "up"),
    ("wan", "up"),
    ("internet", "up"),
    ("internet", "connected"),
    ("connectivity", "internet"),
    ("status", "wanUp"),
    ("wanUp",),
)


def from_direct_fields(gw):
    for path in DIRECT_FIELDS:
        value = _dig(gw, *path)
        if isinstance(value, bool):
            return value
    return None


def from_uplink_list(gw):
    uplinks = gw.get("uplink")
    if not isinstance(uplinks, list) or not uplinks:
        return None
    wan = next((u for u in uplinks if isinstance(u, dict) and "wan" in str(u.get("name") or "").lower()), uplinks[0])
    if not isinstance(wan, dict):
        return None
    for key in ("up", "linkUp", "connected"):
        if isinstance(wan.get(key), bool):
            return wan[key]
    return None


def _device_ports(gw):
    interfaces = gw.get("interfaces")
    if isinstance(interfaces, dict):
        ports = interfaces.get("ports") or interfaces.get("ethernetPorts")
    elif isinstance(interfaces, list):
        ports = interfaces
    else:
        ports = None
    if not isinstance(ports, list):
        ports = gw.get("port_table")
    return [p for p in (ports or []) if isinstance(p, dict)]


def _is_wan_port(port):
    name = str(port.get("name") or port.get("portName") or port.get("displayName") or "").lower()
    role = str(port.get("role") or port.get("purpose") or port.get("usage") or "").lower()
    return port.get("isWan") is True or role == "wan" or "wan" in name


def classify_status(text):
    text = str(text or "").strip().lower()
    if text in UP_WORDS:
        return True
    if text in DOWN_WORDS:
        return False
    return None


def from_ports(gw):
    ports = _device_ports(gw)
    if not ports:
        return None
    candidates = [p for p in ports if _is_wan_port(p)] or ports

    for port in candidates:
        for key in ("up", "linkUp", "hasLink", "connected", "link"):
            if isinstance(port.get(key), bool):
                return port[key]
        verdict = classify_status(port.get("status") or port.get("state"))
        if verdict is not None:
            return verdict
    return None


DEVICE_EXTRACTORS = (
    ("device_field", from_direct_fields),
    ("device_uplinks", from_uplink_list),
    ("device_ports", from_ports),
)


def read_wan_up(gw):
    """Returns (up, source) from the gateway device alone."""
    if not gw:
        return None, "none"
    for source, extractor in DEVICE_EXTRACTORS:
        value = extractor(gw)
        if value is not None:
            return value, source
    return None, "none"


# --- WAN topology ---

def pick_primary_wan_group(groups):
    groups = [g for g in (groups or []) if isinstance(g, dict)]
    if not groups:
        return None

    for g in groups:
        if str(g.get("id") or "").upper() == "WAN":
            return g

    prioritized = [(_to_number(g.get("priority")), i, g) for i, g in enumerate(groups)]
    prioritized = [p for p in prioritized if p[0] is not None]
    if prioritized:
        return min(prioritized, key=lambda p: (p[0], p[1]))[2]
    return groups[0]


def read_wan_status_from_groups(groups):
    """Returns (up, primary WanInterface or None)."""
    primary = pick_primary_wan_group(groups)
    if primary is None:
        return None, None

    wan = WanInterface.from_group(primary)
    if wan.disabled:
        return False, wan
    if wan.uptime is not None:
        return wan.uptime > 0, wan
    return None, wan


def reconcile(devices, wan_groups=None):
    """
    Produces one WanVerdict from the device inventory and (optionally) the
    WAN network-group listing. ``wan_groups`` is None when that listing could
    not be fetched this cycle.
    """
    gw = pick_gateway(devices)
    up, source = read_wan_up(gw)

    wan = None
    if wan_groups is not None:
        group_up, wan = read_wan_status_from_groups(wan_groups)
        if up is None and group_up is not None:
            up, source = group_up, "wan_group"

    gateway = Gateway.from_device(gw)
    detail = {
        "primary": wan.to_dict() if wan else None,
        "groups": len(wan_groups) if wan_groups is not None else None,
    }
    return WanVerdict(up=up, source=source, detail=detail, gateway=gateway)
