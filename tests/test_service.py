import threading

import pytest

from conftest import FakeController, RecordingNotifier, ScriptedProbe
from monitor_engine.errors import AuthenticationError
from monitor_engine.models import HealthState, ProbeResult
from monitor_engine.service import MonitorService, audit_kind
from monitor_engine.state_machine import HealthStateMachine

GATEWAY = {"id": "gw1", "name": "USG-Pro-4", "model": "USG-Pro-4", "type": "ugw"}


class HangingController(FakeController):
    """Blocks the named call until ``gate`` is set."""

    def __init__(self, gate, hang, **kwargs):
        super().__init__(**kwargs)
        self.gate = gate
        self.hang = hang

    def list_devices(self, site):
        if self.hang == "devices":
            self.gate.wait(5)
        return super().list_devices(site)

    def list_wan_groups(self, site):
        if self.hang == "groups":
            self.gate.wait(5)
        return super().list_wan_groups(site)


@pytest.fixture
def make_service(fixed_clock):
    created = []

    def factory(client, probe, **kwargs):
        published, audited = [], []
        service = MonitorService(
            client,
            HealthStateMachine(2, 4, 2, max_history=50, clock=fixed_clock),
            probe_urls=["https://probe.test/"],
            probe=probe,
            publish=published.append,
            audit=audited.append,
            **kwargs,
        )
        created.append(service)
        return service, published, audited

    yield factory
    for service in created:
        service.shutdown(wait=True)


@pytest.fixture
def gate():
    """Released at teardown so blocked workers can finish."""
    event = threading.Event()
    yield event
    event.set()


def test_four_failures_with_unknown_wan_end_in_one_outage_record(make_service) -> None:
    notifier = RecordingNotifier()
    service, published, audited = make_service(
        FakeController(devices=[GATEWAY]), ScriptedProbe(False), notifier=notifier
    )

    states = [HealthState.UNKNOWN]
    for _ in range(4):
        t = service.run_cycle()
        assert t.entry.wan_up is None
        states.append(t.next)
    service.shutdown(wait=True)

    assert states == [HealthState.UNKNOWN, HealthState.UNKNOWN, HealthState.DEGRADED,
                      HealthState.DEGRADED, HealthState.DOWN]
    assert [r["kind"] for r in audited] == ["INTERNET_DOWN"]
    assert audited[0]["prev"] == "DEGRADED" and audited[0]["next"] == "DOWN"
    assert audited[0]["gateway"]["name"] == "USG-Pro-4"
    assert audited[0]["note"] == "failCount=4"

    assert len(notifier.sent) == 1
    alert = notifier.sent[0]
    assert alert["state"] == "DOWN"
    assert alert["details"]["mode"] == "unifios"
    assert alert["details"]["wanHealth"] == {"subsystem": "wan", "status": "ok"}
    assert alert["details"]["gatewaySnapshot"]["id"] == "gw1"


def test_tick_every_cycle_and_state_change_on_transitions(make_service) -> None:
    service, published, _ = make_service(FakeController(devices=[GATEWAY]), ScriptedProbe(True, True, False))

    for _ in range(3):
        service.run_cycle()

    types = [m["type"] for m in published]
    assert types == ["tick", "state_change", "tick", "tick"]
    change = published[1]
    assert (change["prev"], change["next"], change["label"]) == ("UNKNOWN", "OK", "🟢 OK")
    assert change["entry"] == published[0]["entry"]
    assert published[-1]["entry"]["reason"] == "PROBE_FAIL_SOFT"


def test_wan_down_from_device_is_immediate(make_service) -> None:
    gw = dict(GATEWAY, uplink={"up": False})
    service, published, audited = make_service(FakeController(devices=[gw]), ScriptedProbe(True))

    t = service.run_cycle()

    assert t.next == HealthState.DOWN
    assert t.entry.reason == "WAN_LINK_DOWN"
    assert audited[0]["kind"] == "INTERNET_DOWN"


def test_restoration_is_audited(make_service) -> None:
    client = FakeController(devices=[dict(GATEWAY, uplink={"up": False})])
    service, _, audited = make_service(client, ScriptedProbe(True))

    service.run_cycle()
    client.devices = [dict(GATEWAY, uplink={"up": True})]
    service.run_cycle()
    service.run_cycle()

    assert [r["kind"] for r in audited] == ["INTERNET_DOWN", "INTERNET_RESTORED"]


def test_wan_groups_failure_is_swallowed(make_service) -> None:
    client = FakeController(devices=[GATEWAY], groups_error=RuntimeError("404"))
    service, published, _ = make_service(client, ScriptedProbe(True))

    t = service.run_cycle()

    assert t.entry.controller_error is None
    assert t.entry.wan_detail["groups"] is None


def test_wan_groups_feed_the_verdict(make_service) -> None:
    client = FakeController(devices=[GATEWAY], wan_groups=[{"id": "WAN", "uptime": 0}])
    service, _, _ = make_service(client, ScriptedProbe(True))

    t = service.run_cycle()

    assert t.entry.wan_up is False
    assert t.next == HealthState.DOWN


def test_controller_failure_keeps_ticking_with_error(make_service) -> None:
    client = FakeController(devices=[dict(GATEWAY, uplink={"up": True})])
    service, published, _ = make_service(client, ScriptedProbe(True))
    service.run_cycle()

    client.devices_error = AuthenticationError("Controller login failed (auto).")
    t1 = service.run_cycle()
    t2 = service.run_cycle()

    assert (t1.prev, t1.next) == (HealthState.OK, HealthState.UNKNOWN)
    assert t1.entry.wan_up is None
    assert t2.changed is False
    ticks = [m for m in published if m["type"] == "tick"]
    assert len(ticks) == 3
    assert ticks[-1]["entry"]["controllerError"] == "Controller login failed (auto)."
    assert [m["next"] for m in published if m["type"] == "state_change"] == ["OK", "UNKNOWN"]


def test_snapshot_message(make_service) -> None:
    service, _, _ = make_service(FakeController(devices=[GATEWAY]), ScriptedProbe(True))
    service.run_cycle()

    msg = service.snapshot_message()

    assert set(msg) == {"type", "data", "label"}
    assert msg["type"] == "snapshot"
    assert msg["label"] == "🟢 OK"
    assert msg["data"]["state"] == "OK"
    assert len(msg["data"]["history"]) == 1


def test_loop_survives_a_failing_cycle(make_service) -> None:
    stop = threading.Event()
    probe = ScriptedProbe(True)
    service, published, _ = make_service(FakeController(devices=[GATEWAY]), probe, interval=0)

    def flaky_publish(message):
        if probe.calls == 1:
            raise RuntimeError("socket exploded")
        if probe.calls >= 3:
            stop.set()
        published.append(message)

    service.publish = flaky_publish
    service.run_forever(stop)

    assert probe.calls == 3
    assert len(service.state_machine.history) == 3


def test_audit_kind() -> None:
    assert audit_kind(HealthState.OK, HealthState.DOWN) == "INTERNET_DOWN"
    assert audit_kind(HealthState.DOWN, HealthState.OK) == "INTERNET_RESTORED"
    assert audit_kind(HealthState.DOWN, HealthState.UNKNOWN) is None
    assert audit_kind(HealthState.OK, HealthState.DEGRADED) is None
    assert audit_kind(HealthState.DOWN, HealthState.DOWN) is None


def test_slow_wan_groups_do_not_fail_the_controller_side(make_service, gate) -> None:
    client = HangingController(gate, "groups", devices=[dict(GATEWAY, uplink={"up": True})],
                               wan_groups=[{"id": "WAN", "uptime": 0}])
    service, published, _ = make_service(client, ScriptedProbe(True), cycle_timeout=0.3)

    t = service.run_cycle()

    assert t.entry.controller_error is None
    assert t.entry.wan_up is True
    assert t.entry.gateway.name == "USG-Pro-4"
    assert t.entry.wan_detail["groups"] is None
    assert t.next == HealthState.OK


def test_hanging_probe_counts_as_failed(make_service, gate) -> None:
    def hanging_probe(urls, timeout):
        gate.wait(5)
        return ProbeResult(success=True, target_url=urls[0], latency_ms=1)

    client = FakeController(devices=[dict(GATEWAY, uplink={"up": True})])
    service, published, _ = make_service(client, hanging_probe, cycle_timeout=0.2)

    t = service.run_cycle()

    assert t.entry.probe == ProbeResult(success=False, target_url="https://probe.test/", latency_ms=None)
    assert t.entry.reason == "PROBE_FAIL_SOFT"
    assert t.entry.controller_error is None
    assert [m["type"] for m in published] == ["tick"]


def test_hanging_controller_still_ticks(make_service, gate) -> None:
    client = HangingController(gate, "devices", devices=[GATEWAY])
    service, published, _ = make_service(client, ScriptedProbe(True), cycle_timeout=0.2)

    t = service.run_cycle()

    assert t.entry.controller_error == "controller timed out after 0.2s"
    assert t.entry.wan_up is None
    assert t.next == HealthState.UNKNOWN
    assert t.entry.reason == "CONTROLLER_ERROR"
    assert [m["type"] for m in published] == ["tick"]
    assert published[0]["entry"]["controllerError"] == "controller timed out after 0.2s"


def test_controller_and_probe_run_concurrently(make_service) -> None:
    both_running = threading.Barrier(2, timeout=2)

    class RendezvousController(FakeController):
        def list_devices(self, site):
            both_running.wait()
            return super().list_devices(site)

    def rendezvous_probe(urls, timeout):
        both_running.wait()
        return ProbeResult(success=True, target_url=urls[0], latency_ms=5)

    client = RendezvousController(devices=[dict(GATEWAY, uplink={"up": True})])
    service, _, _ = make_service(client, rendezvous_probe, cycle_timeout=5)

    t = service.run_cycle()

    assert t.entry.controller_error is None
    assert t.entry.probe.success is True
    assert t.next == HealthState.OK
