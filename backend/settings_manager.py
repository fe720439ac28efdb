import json
import logging
import os

logger = logging.getLogger(__name__)

# File to store static settings (optional)
SETTINGS_FILE = os.environ.get(
    "MONITOR_SETTINGS_FILE", os.path.join(os.path.dirname(__file__), 'app_settings.json')
)

# Default values if neither the file nor the environment override them
DEFAULTS = {
    "controller_base_url": "",
    "controller_username": "",
    "controller_password": "",
    "controller_site": "default",
    "controller_mode": "auto",          # auto | unifios | legacy
    "legacy_port": 8443,
    "verify_tls": False,                # most controllers ship self-signed certs
    "interval_secs": 15.0,
    "probe_urls": [
        "https://one.one.one.one/cdn-cgi/trace",
        "https://www.google.com/generate_204",
    ],
    "probe_timeout_secs": 3.5,
    "request_timeout_secs": 10.0,
    # Hysteresis
    "degraded_after_fails": 2,
    "down_after_fails": 4,
    "ok_after_successes": 2,
    "max_history": 300,
    "alert_webhook": "",
    "log_dir": "logs",
    "log_file": "internet-events.log",
    "port": 3333,
}

ENV_KEYS = {
    "UNIFI_BASE_URL": "controller_base_url",
    "UNIFI_USERNAME": "controller_username",
    "UNIFI_PASSWORD": "controller_password",
    "UNIFI_SITE": "controller_site",
    "UNIFI_MODE": "controller_mode",
    "UNIFI_LEGACY_PORT": "legacy_port",
    "UNIFI_VERIFY_TLS": "verify_tls",
    "INTERVAL_SECS": "interval_secs",
    "PROBE_URLS": "probe_urls",
    "PROBE_TIMEOUT_SECS": "probe_timeout_secs",
    "REQUEST_TIMEOUT_SECS": "request_timeout_secs",
    "DEGRADED_AFTER_FAILS": "degraded_after_fails",
    "DOWN_AFTER_FAILS": "down_after_fails",
    "OK_AFTER_SUCCESSES": "ok_after_successes",
    "MAX_HISTORY": "max_history",
    "ALERT_WEBHOOK": "alert_webhook",
    "LOG_DIR": "log_dir",
    "LOG_FILE": "log_file",
    "PORT": "port",
}


def _coerce(key, value):
    """Convert a raw value to the type of its default."""
    default = DEFAULTS[key]
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if isinstance(default, list):
        if isinstance(value, str):
            value = value.split(",")
        return [str(v).strip() for v in value if str(v).strip()]
    return str(value).strip()


def normalize_base_url(url):
    url = (url or "").strip().rstrip("/")
    if url and "://" not in url:
        url = f"https://{url}"
    return url


def _load_file(path):
    if not os.path.exists(path):
        return {}
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"⚠️ Ignoring unreadable settings file {path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def get_settings(path=None, environ=None):
    """Defaults, then the JSON settings file, then environment variables."""
    environ = os.environ if environ is None else environ
    current = DEFAULTS.copy()

    overrides = dict(_load_file(path or SETTINGS_FILE))
    for env_name, key in ENV_KEYS.items():
        raw = environ.get(env_name)
        if raw is not None and raw.strip() != "":
            overrides[key] = raw

    for key, value in overrides.items():
        if key not in DEFAULTS:
            continue
        try:
            current[key] = _coerce(key, value)
        except (TypeError, ValueError):
            logger.warning(f"⚠️ Invalid value for {key!r}: {value!r}, using default {DEFAULTS[key]!r}")

    current["controller_base_url"] = normalize_base_url(current["controller_base_url"])
    current["controller_mode"] = current["controller_mode"].lower()
    return current
