"""
UniFi controller client.

Two API dialects are supported:
  * ``unifios`` - UniFi OS consoles: login at ``{base}/api/auth/login``,
    Network application proxied under ``/proxy/network``.
  * ``legacy``  - standalone controllers on port 8443: login at
    ``{base:8443}/api/login``, no proxy prefix.

In ``auto`` mode UniFi OS is tried first and legacy second. Whichever works
is pinned in the Session until the controller rejects it.
"""
import logging
import re
import threading
from dataclasses import dataclass
from typing import Optional

import requests

from .errors import AuthenticationError, SessionExpiredError, TransportError
from .reconciler import unwrap_list

logger = logging.getLogger(__name__)

UNIFIOS = "unifios"
LEGACY = "legacy"
MODES = ("auto", UNIFIOS, LEGACY)

AUTH_FAILURE_STATUSES = (401, 403)
PAGE_SIZE = 200

DIALECTS = {
    UNIFIOS: {"login": "/api/auth/login", "prefix": "/proxy/network"},
    LEGACY: {"login": "/api/login", "prefix": ""},
}


@dataclass
class Session:
    cookie: str
    dialect: str
    base_url: str
    csrf_token: Optional[str] = None


def with_port(url, port):
    """Adds ``port`` to ``url`` unless it already carries one."""
    m = re.match(r"^(https?://[^/:]+)(:\d+)?(/.*)?$", url, re.IGNORECASE)
    if not m:
        return url
    host, existing, path = m.group(1), m.group(2), m.group(3) or ""
    return f"{host}{existing or f':{port}'}{path}"


def _cookie_header(response):
    return "; ".join(f"{name}={value}" for name, value in response.cookies.items())


class ControllerClient:
    def __init__(self, base_url, username, password, mode="auto", legacy_port=8443,
                 timeout=10.0, verify_tls=False, http=None):
        if mode not in MODES:
            raise ValueError(f"Unknown controller mode {mode!r} (expected one of {MODES})")
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.mode = mode
        self.legacy_port = legacy_port
        self.timeout = timeout
        self.verify_tls = verify_tls
        self.http = http or requests.Session()
        self.session = None
        self._auth_lock = threading.Lock()

    @property
    def dialect(self):
        return self.session.dialect if self.session else None

    # --- authentication ---

    def _login(self, dialect, base_url):
        url = f"{base_url}{DIALECTS[dialect]['login']}"
        try:
            res = self.http.request(
                "POST", url,
                json={"username": self.username, "password": self.password},
                headers={"Accept": "application/json"},
                timeout=self.timeout, verify=self.verify_tls,
            )
        except requests.RequestException as e:
            raise TransportError(f"{dialect} login failed: {e}", path=url) from e

        if not res.ok:
            body = res.text
            raise TransportError(f"{dialect} login failed: HTTP {res.status_code} {body}",
                                 status_code=res.status_code, body=body, path=url)

        cookie = _cookie_header(res)
        if not cookie:
            raise TransportError(f"{dialect} login OK but no session cookie was set", path=url)

        return Session(cookie=cookie, dialect=dialect, base_url=base_url,
                       csrf_token=res.headers.get("X-CSRF-Token"))

    def authenticate(self):
        """Logs in and pins the dialect. Raises AuthenticationError."""
        candidates = []
        if self.mode in ("auto", UNIFIOS):
            candidates.append((UNIFIOS, self.base_url))
        if self.mode in ("auto", LEGACY):
            candidates.append((LEGACY, with_port(self.base_url, self.legacy_port)))

        failures = {}
        for dialect, base_url in candidates:
            try:
                self.session = self._login(dialect, base_url)
            except TransportError as e:
                failures[dialect] = str(e)
                logger.debug(f"Login attempt failed ({dialect}): {e}")
                continue
            logger.info(f"✅ Logged in to controller ({dialect}) at {base_url}")
            return self.session

        details = "\n".join(f"- {d}: {msg}" for d, msg in failures.items())
        raise AuthenticationError(f"Controller login failed ({self.mode}).\n{details}", failures)

    def invalidate(self):
        self.session = None
        self.http.cookies.clear()

    def ensure_session(self):
        """Logs in lazily; concurrent callers share one login."""
        with self._auth_lock:
            if self.session is None:
                self.authenticate()
            return self.session

    def renew_session(self, stale):
        """Replaces ``stale`` unless another caller already did."""
        with self._auth_lock:
            if self.session is stale or self.session is None:
                self.invalidate()
                self.authenticate()
            return self.session

    # --- requests ---

    def _send(self, session, path, method, body, params, proxied):
        if proxied:
            path = f"{DIALECTS[session.dialect]['prefix']}{path}"
        headers = {"Accept": "application/json", "Cookie": session.cookie}
        if session.csrf_token:
            headers["X-CSRF-Token"] = session.csrf_token
        try:
            return self.http.request(
                method, f"{session.base_url}{path}",
                json=body, params=params, headers=headers,
                timeout=self.timeout, verify=self.verify_tls,
            )
        except requests.RequestException as e:
            raise TransportError(f"{method} {path} failed: {e}", path=path) from e

    def request(self, path, method="GET", body=None, params=None, proxied=False):
        """
        Authenticated call. An authorization failure clears the session,
        re-authenticates once and retries once; a second rejection raises
        SessionExpiredError.

        With ``proxied`` the dialect's Network-application prefix is put in
        front of ``path``.
        """
        session = self.ensure_session()

        res = self._send(session, path, method, body, params, proxied)
        if res.status_code in AUTH_FAILURE_STATUSES:
            logger.info(f"🔑 Session rejected (HTTP {res.status_code}) on {path}, logging in again")
            session = self.renew_session(session)
            res = self._send(session, path, method, body, params, proxied)
            if res.status_code in AUTH_FAILURE_STATUSES:
                text = res.text
                raise SessionExpiredError(f"HTTP {res.status_code} on {path} after re-login: {text}",
                                          status_code=res.status_code, body=text, path=path)

        if not res.ok:
            text = res.text
            raise TransportError(f"HTTP {res.status_code} on {path}: {text}",
                                 status_code=res.status_code, body=text, path=path)
        try:
            return res.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON from {path}: {e}", status_code=res.status_code, path=path) from e

    # --- endpoints ---

    def list_devices(self, site):
        """All devices of ``site``, every page aggregated."""
        path = f"/api/s/{site}/stat/device"
        devices = []
        offset = 0
        last_first_id = None

        while True:
            payload = self.request(path, params={"limit": PAGE_SIZE, "offset": offset}, proxied=True)
            page = unwrap_list(payload)
            if not page:
                break

            first = page[0] if isinstance(page[0], dict) else {}
            first_id = first.get("id", first.get("_id"))
            # Endpoints that ignore limit/offset return the same page again
            if offset and first_id is not None and first_id == last_first_id:
                break
            last_first_id = first_id

            devices.extend(page)
            total = payload.get("totalCount") if isinstance(payload, dict) else None
            if len(page) < PAGE_SIZE or (isinstance(total, int) and len(devices) >= total):
                break
            offset += PAGE_SIZE
        return devices

    def list_wan_groups(self, site):
        try:
            return unwrap_list(self.request(f"/v2/api/site/{site}/wan/networkgroups", proxied=True))
        except TransportError as e:
            # Some firmwares only answer on the "default" site name here
            if site == "default":
                raise
            original = e
        try:
            return unwrap_list(self.request("/v2/api/site/default/wan/networkgroups", proxied=True))
        except TransportError:
            raise original

    def wan_health(self, site):
        """The ``wan`` subsystem entry of stat/health, or None."""
        health = unwrap_list(self.request(f"/api/s/{site}/stat/health", proxied=True))
        return next((h for h in health if isinstance(h, dict)
                     and str(h.get("subsystem") or "").lower() == "wan"), None)
