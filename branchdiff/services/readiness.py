from __future__ import annotations

import http.client
import logging
import socket
import time
import urllib.error
import urllib.request
from typing import Callable, Optional

from branchdiff.constants import DEFAULT_PROBE_INTERVAL_SECONDS, DEFAULT_PROBE_REQUEST_TIMEOUT_SECONDS
from branchdiff.services.errors import ReadinessTimeoutError

LOGGER = logging.getLogger("branchdiff.readiness")


class ReadinessProber:
    """Polls a freshly started server until it answers HTTP with a non-5xx status."""

    def __init__(
        self,
        *,
        interval: float = DEFAULT_PROBE_INTERVAL_SECONDS,
        request_timeout: float = DEFAULT_PROBE_REQUEST_TIMEOUT_SECONDS,
        host: str = "localhost",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        opener: Callable[..., object] = urllib.request.urlopen,
    ) -> None:
        self._interval = interval
        self._request_timeout = request_timeout
        self._host = host
        self._clock = clock
        self._sleep = sleep
        self._opener = opener

    def url_for(self, port: int) -> str:
        return f"http://{self._host}:{port}/"

    def probe(self, url: str) -> Optional[int]:
        """Return the HTTP status of one request, or ``None`` if the server did not answer."""
        try:
            with self._opener(url, timeout=self._request_timeout) as response:
                return int(getattr(response, "status", None) or response.getcode())
        except urllib.error.HTTPError as exc:
            return exc.code
        except (urllib.error.URLError, http.client.HTTPException, socket.timeout, OSError) as exc:
            LOGGER.debug("Probe of %s not answered: %s", url, exc)
            return None

    def wait_ready(
        self,
        port: int,
        timeout: float,
        *,
        is_alive: Optional[Callable[[], bool]] = None,
    ) -> None:
        url = self.url_for(port)
        deadline = self._clock() + timeout
        attempts = 0
        while True:
            attempts += 1
            status = self.probe(url)
            if status is not None and status < 500:
                LOGGER.info("Server on port %s ready after %s probe(s) (status=%s)", port, attempts, status)
                return
            if status is not None:
                LOGGER.debug("Server on port %s answered %s; retrying", port, status)
            if is_alive is not None and not is_alive():
                raise ReadinessTimeoutError(f"Server on port {port} exited before becoming ready")
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ReadinessTimeoutError(f"Server on port {port} did not respond within {timeout:g}s")
            self._sleep(min(self._interval, remaining))
