import logging
import time

import requests

from .models import ProbeResult

logger = logging.getLogger(__name__)

DEFAULT_TARGETS = ["https://one.one.one.one/cdn-cgi/trace"]


def probe_internet(urls, timeout_secs=3.5, session=None):
    """
    Tries each target in order; the first 2xx/3xx answer wins. Latency is
    measured up to the response headers (the body is never downloaded).
    Never raises.
    """
    urls = list(urls) or DEFAULT_TARGETS
    http = session or requests

    for url in urls:
        started = time.monotonic()
        try:
            res = http.get(url, timeout=timeout_secs, stream=True, headers={"Accept": "*/*"})
        except requests.RequestException as e:
            logger.debug(f"Probe {url} failed: {e}")
            continue
        try:
            elapsed_ms = int(round((time.monotonic() - started) * 1000))
            if res.ok:
                return ProbeResult(success=True, target_url=url, latency_ms=elapsed_ms)
            logger.debug(f"Probe {url} answered HTTP {res.status_code}")
        finally:
            res.close()

    return ProbeResult(success=False, target_url=urls[0], latency_ms=None)
