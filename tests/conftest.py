import pytest

from monitor_engine.models import ProbeResult


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text="", cookies=None, headers=None):
        self.status_code = status_code
        self._json = json_data
        self.text = text
        self.cookies = cookies or {}
        self.headers = headers or {}
        self.closed = False

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._json is None:
            raise ValueError("no json")
        return self._json

    def raise_for_status(self):
        import requests
        if not self.ok:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def close(self):
        self.closed = True


class FakeHttp:
    """Stands in for requests.Session; ``handler(method, url, kwargs)`` answers."""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []
        self.cookies = {}

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        return self.handler(method, url, kwargs)

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)


def login_ok(cookie="TOKEN=abc", headers=None):
    name, value = cookie.split("=", 1)
    return FakeResponse(200, {"meta": {"rc": "ok"}}, cookies={name: value}, headers=headers)


class FakeController:
    """Minimal ControllerClient double for service/app tests."""

    def __init__(self, devices=None, wan_groups=None, devices_error=None, groups_error=None):
        self.devices = devices if devices is not None else []
        self.wan_groups = wan_groups
        self.devices_error = devices_error
        self.groups_error = groups_error
        self.base_url = "https://controller.local"
        self.dialect = "unifios"
        self.timeout = 1.0

    def ensure_session(self):
        return object()

    def list_devices(self, site):
        if self.devices_error:
            raise self.devices_error
        return self.devices

    def list_wan_groups(self, site):
        if self.groups_error or self.wan_groups is None:
            raise self.groups_error or RuntimeError("no groups")
        return self.wan_groups

    def wan_health(self, site):
        return {"subsystem": "wan", "status": "ok"}


class ScriptedProbe:
    """Returns the given success flags in order, then keeps repeating the last one."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def __call__(self, urls, timeout):
        ok = self.outcomes[min(self.calls, len(self.outcomes) - 1)]
        self.calls += 1
        return ProbeResult(success=ok, target_url="https://probe.test/", latency_ms=20 + self.calls if ok else None)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def send(self, payload):
        self.sent.append(payload)
        return True


@pytest.fixture
def fixed_clock():
    """Clock yielding strictly increasing ISO timestamps one second apart."""
    state = {"n": 0}

    def clock():
        state["n"] += 1
        return f"2026-01-01T00:{state['n'] // 60:02d}:{state['n'] % 60:02d}.000Z"

    return clock
