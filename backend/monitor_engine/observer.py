"""
Observer side of the push channel.

Keeps a local copy of the health timeline in sync with the monitor:
snapshot on (re)connect, deduplicated merge of incremental updates, and
reconnection with capped exponential backoff (no jitter).

    offline --start()--> connecting --ok--> online
       ^                    |                 |
       |                  fail           disconnect
       |                    v                 v
     stop() <---------- reconnecting <--------+
"""
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum

import socketio

logger = logging.getLogger(__name__)

PUSH_EVENT = "monitor"


class ConnectionStatus(str, Enum):
    OFFLINE = "offline"
    CONNECTING = "connecting"
    ONLINE = "online"
    RECONNECTING = "reconnecting"


@dataclass
class ConnectionState:
    status: ConnectionStatus = ConnectionStatus.OFFLINE
    retry_attempt: int = 0


def entry_key(entry):
    probe = entry.get("probe") or {}
    ms = probe.get("ms")
    return (entry.get("ts"), entry.get("state"), "x" if ms is None else ms)


def backoff_delay(attempt, base_delay=0.5, max_delay=15.0):
    """Delay before retry number ``attempt`` (0-based)."""
    return min(max_delay, base_delay * (2 ** attempt))


class ObserverClient:
    def __init__(self, url, history_cap=250, base_delay=0.5, max_delay=15.0, max_attempt=8,
                 stale_after=35.0, stale_tick=1.0, clock=time.time, sio=None, on_update=None):
        self.url = url
        self.history_cap = history_cap
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempt = max_attempt
        self.stale_after = stale_after
        self.stale_tick = stale_tick
        self.clock = clock
        self.on_update = on_update or (lambda client: None)

        self.connection = ConnectionState()
        self.state = "UNKNOWN"
        self.label = ""
        self.history = []
        self.last_update_at = None
        self.stale = False

        self._lock = threading.RLock()
        self._running = False
        self._retry_timer = None
        self._stale_stop = threading.Event()
        self._stale_thread = None

        self.sio = sio or socketio.Client(reconnection=False)
        self.sio.on("connect", self._on_connect)
        self.sio.on("disconnect", self._on_disconnect)
        self.sio.on(PUSH_EVENT, self.handle_message)

    # --- lifecycle ---

    def start(self):
        with self._lock:
            if self._running:
                return
            self._running = True
        self._stale_stop.clear()
        self._stale_thread = threading.Thread(target=self._stale_loop, name="observer-stale", daemon=True)
        self._stale_thread.start()
        self.connect()

    def stop(self):
        with self._lock:
            self._running = False
            if self._retry_timer:
                self._retry_timer.cancel()
                self._retry_timer = None
            self.connection.status = ConnectionStatus.OFFLINE
        self._stale_stop.set()
        if self.sio.connected:
            self.sio.disconnect()

    def connect(self):
        with self._lock:
            if not self._running:
                return
            self._retry_timer = None
            self.connection.status = ConnectionStatus.CONNECTING
        try:
            self.sio.connect(self.url, wait_timeout=10)
        except socketio.exceptions.ConnectionError as e:
            logger.warning(f"⚠️ Connection to {self.url} failed: {e}")
            self.schedule_reconnect()

    def schedule_reconnect(self):
        """Arms the retry timer; returns the delay used (None when stopped)."""
        with self._lock:
            if not self._running:
                return None
            delay = backoff_delay(self.connection.retry_attempt, self.base_delay, self.max_delay)
            self.connection.retry_attempt = min(self.max_attempt, self.connection.retry_attempt + 1)
            self.connection.status = ConnectionStatus.RECONNECTING
            if self._retry_timer:
                self._retry_timer.cancel()
            self._retry_timer = threading.Timer(delay, self.connect)
            self._retry_timer.daemon = True
            self._retry_timer.start()
        logger.info(f"🔄 Reconnecting in {delay:.1f}s (attempt {self.connection.retry_attempt})")
        return delay

    def _on_connect(self):
        with self._lock:
            self.connection.status = ConnectionStatus.ONLINE
            self.connection.retry_attempt = 0
        logger.info(f"✅ Connected to {self.url}")
        self.sio.emit("request_snapshot")

    def _on_disconnect(self, *args):
        with self._lock:
            if not self._running:
                self.connection.status = ConnectionStatus.OFFLINE
                return
        logger.warning("⚠️ Disconnected from monitor")
        self.schedule_reconnect()

    # --- messages ---

    def handle_message(self, message):
        kind = (message or {}).get("type")
        with self._lock:
            if kind == "snapshot":
                self.apply_snapshot(message)
            elif kind in ("tick", "state_change"):
                self.merge_entry(message)
            else:
                logger.debug(f"Ignoring message {kind!r}")
                return
        self.on_update(self)

    def apply_snapshot(self, message):
        data = message.get("data") or {}
        with self._lock:
            self.state = data.get("state", self.state)
            self.label = message.get("label") or data.get("label", "")
            self.history = list(data.get("history") or [])[:self.history_cap]
            self._touch()

    def merge_entry(self, message):
        """Prepends the message's entry unless the same entry is already at the head."""
        entry = message.get("entry")
        if not entry:
            return False
        with self._lock:
            self.state = message.get("state") or message.get("next") or entry.get("state", self.state)
            self.label = message.get("label") or self.label
            self._touch()
            if self.history and entry_key(self.history[0]) == entry_key(entry):
                return False
            self.history = [entry] + self.history[:self.history_cap - 1]
            return True

    # --- staleness ---

    def _touch(self):
        self.last_update_at = self.clock()
        self.stale = False

    def check_stale(self):
        with self._lock:
            if self.last_update_at is None:
                self.stale = False
            else:
                self.stale = (self.clock() - self.last_update_at) > self.stale_after
            return self.stale

    def _stale_loop(self):
        while not self._stale_stop.wait(self.stale_tick):
            was_stale = self.stale
            if self.check_stale() and not was_stale:
                logger.warning(f"⏸️ No update for more than {self.stale_after:g}s")
                self.on_update(self)


if __name__ == '__main__':
    import sys

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    target = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:3333"

    def show(client):
        head = client.history[0] if client.history else {}
        probe = head.get("probe") or {}
        print(f"{client.label or client.state} | ws={client.connection.status.value} "
              f"| stale={client.stale} | probe={probe.get('ms', '-')}ms | {head.get('reason', '')}")

    observer = ObserverClient(target, on_update=show)
    observer.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        observer.stop()
