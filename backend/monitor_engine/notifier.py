import logging

import requests

from .models import HealthState, state_label

logger = logging.getLogger(__name__)


def should_alert(prev, next_state):
    """Startup discovery (UNKNOWN -> OK/DEGRADED) is not worth an alert."""
    if prev == next_state:
        return False
    return next_state == HealthState.DOWN or prev != HealthState.UNKNOWN


def build_alert(transition, base_url, site, mode, wan_health=None):
    entry = transition.entry
    gw = entry.gateway
    gw_name = (gw.name or gw.model) if gw else "?"
    return {
        "text": (
            f"{state_label(transition.next)} | gw={gw_name} | wanUp={entry.wan_up} "
            f"| probeOk={entry.probe.success} | mode={mode}"
        ),
        "ts": entry.timestamp,
        "state": transition.next.value,
        "details": {
            "baseUrl": base_url,
            "site": site,
            "mode": mode,
            "probe": entry.probe.to_dict(),
            "wanUp": entry.wan_up,
            "wanHealth": wan_health,
            "gatewaySnapshot": gw.to_dict() if gw else None,
        },
    }


class AlertNotifier:
    """Fire-and-forget JSON webhook. Failures are logged, never raised."""

    def __init__(self, webhook_url="", timeout=5.0, session=None):
        self.webhook_url = (webhook_url or "").strip()
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, payload):
        if not self.webhook_url:
            return False
        try:
            res = self.session.post(self.webhook_url, json=payload, timeout=self.timeout)
            res.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.warning(f"⚠️ Alert webhook failed: {e}")
            return False
