"""
Polling loop and push distribution.

One cycle = device inventory + WAN groups + WAN health (best effort) + active
probe, run concurrently; then reconciliation, state machine update and
publication of a ``tick`` (every cycle) and a ``state_change`` (transitions).
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait

from . import notifier as alerts
from .models import HealthState, ProbeResult, state_label
from .probe import DEFAULT_TARGETS, probe_internet
from .reconciler import reconcile

logger = logging.getLogger(__name__)

INTERNET_DOWN = "INTERNET_DOWN"
INTERNET_RESTORED = "INTERNET_RESTORED"


def audit_kind(prev, next_state):
    """Only outages and DOWN -> OK restorations reach the audit log."""
    if prev == next_state:
        return None
    if next_state == HealthState.DOWN:
        return INTERNET_DOWN
    if prev == HealthState.DOWN and next_state == HealthState.OK:
        return INTERNET_RESTORED
    return None


class MonitorService:
    def __init__(self, client, state_machine, site="default", probe_urls=(), probe_timeout=3.5,
                 cycle_timeout=None, interval=15.0, notifier=None, audit=None, publish=None,
                 probe=probe_internet):
        self.client = client
        self.state_machine = state_machine
        self.site = site
        self.probe_urls = list(probe_urls)
        self.probe_timeout = probe_timeout
        self.cycle_timeout = cycle_timeout or (
            client.timeout * 4 + probe_timeout * max(1, len(self.probe_urls))
        )
        self.interval = interval
        self.notifier = notifier
        self.audit = audit
        self.publish = publish or (lambda message: None)
        self.probe = probe
        self._pool = ThreadPoolExecutor(max_workers=6, thread_name_prefix="monitor-cycle")

    # --- protocol messages ---

    def snapshot_message(self):
        snap = self.state_machine.snapshot()
        return {"type": "snapshot", "data": snap, "label": snap["label"]}

    def status(self):
        return self.state_machine.snapshot()

    @staticmethod
    def tick_message(state, entry):
        return {"type": "tick", "state": state.value, "label": state_label(state), "entry": entry.to_dict()}

    @staticmethod
    def state_change_message(transition):
        return {
            "type": "state_change",
            "prev": transition.prev.value,
            "next": transition.next.value,
            "label": state_label(transition.next),
            "entry": transition.entry.to_dict(),
        }

    # --- cycle ---

    def _outcome(self, future, name):
        if not future.done():
            future.cancel()
            return None, TimeoutError(f"{name} timed out after {self.cycle_timeout:g}s")
        error = future.exception()
        return (None, error) if error else (future.result(), None)

    def _fetch_controller(self):
        """
        Logs in, queues the best-effort WAN groups and WAN health calls and
        lists devices. Only a login or device failure fails the controller side.
        """
        self.client.ensure_session()
        groups = self._pool.submit(self.client.list_wan_groups, self.site)
        health = self._pool.submit(self.client.wan_health, self.site)
        return self.client.list_devices(self.site), groups, health

    def _gather(self):
        """
        Runs the controller side and the probe concurrently. Every source
        shares one deadline; whatever is still running then counts as failed.
        """
        deadline = time.monotonic() + self.cycle_timeout
        controller = self._pool.submit(self._fetch_controller)
        probe = self._pool.submit(self.probe, self.probe_urls, self.probe_timeout)
        wait([controller, probe], timeout=self.cycle_timeout)

        fetched, controller_error = self._outcome(controller, "controller")
        devices, wan_groups, wan_health = None, (None, None), (None, None)
        if fetched:
            devices, groups, health = fetched
            wait([groups, health], timeout=max(0.0, deadline - time.monotonic()))
            wan_groups = self._outcome(groups, "wan_groups")
            wan_health = self._outcome(health, "wan_health")
        return (devices, controller_error), wan_groups, wan_health, self._outcome(probe, "probe")

    def run_cycle(self):
        controller, groups, health, probed = self._gather()
        (devices, controller_error), (wan_groups, groups_error) = controller, groups
        (wan_health, _), (probe, probe_error) = health, probed

        if probe_error:
            # probe_internet never raises; only a timeout can get here
            target = (self.probe_urls or DEFAULT_TARGETS)[0]
            probe = ProbeResult(success=False, target_url=target, latency_ms=None)
        if groups_error:
            logger.debug(f"WAN groups unavailable: {groups_error}")

        controller_error = str(controller_error) if controller_error else None
        verdict = reconcile(devices or [], wan_groups)
        wan_up = None if controller_error else verdict.up

        transition = self.state_machine.update(
            wan_up, probe,
            wan_detail=verdict.to_dict(),
            gateway=verdict.gateway,
            controller_error=controller_error,
        )

        gw = verdict.gateway
        logger.info(
            f"{state_label(transition.next)} mode={self.client.dialect} "
            f"gw={(gw.name or gw.model) if gw else '-'} wanUp={wan_up} ({verdict.source}) "
            f"probeOk={probe.success} ms={probe.latency_ms} reason={transition.entry.reason}"
        )
        if controller_error:
            logger.warning(f"⚠️ Controller error: {controller_error}")

        self.publish(self.tick_message(transition.next, transition.entry))
        if transition.changed:
            self._on_transition(transition, wan_health)
        return transition

    def _on_transition(self, transition, wan_health):
        self.publish(self.state_change_message(transition))

        kind = audit_kind(transition.prev, transition.next)
        if kind and self.audit:
            entry = transition.entry
            self.audit({
                "ts": entry.timestamp,
                "kind": kind,
                "prev": transition.prev.value,
                "next": transition.next.value,
                "probe": entry.probe.to_dict(),
                "wanUp": entry.wan_up,
                "gateway": entry.gateway.to_dict() if entry.gateway else None,
                "note": entry.note or entry.reason,
            })

        if self.notifier and alerts.should_alert(transition.prev, transition.next):
            payload = alerts.build_alert(
                transition, self.client.base_url, self.site, self.client.dialect, wan_health
            )
            self._pool.submit(self.notifier.send, payload)

    def run_forever(self, stop_event):
        """Cycles until ``stop_event`` is set; a slow cycle delays the next one."""
        logger.info(f"🚀 Monitor loop started (site={self.site}, every {self.interval:g}s)")
        while not stop_event.is_set():
            started = time.monotonic()
            try:
                self.run_cycle()
            except Exception:
                logger.exception("❌ Monitor cycle failed")
            elapsed = time.monotonic() - started
            stop_event.wait(max(0.0, self.interval - elapsed))
        logger.info("Monitor loop stopped")

    def shutdown(self, wait=False):
        self._pool.shutdown(wait=wait)
