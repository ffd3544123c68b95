"""Endpoint failover client for the TPN configuration API.

Requests go to an ordered list of base endpoints. Each endpoint is tried with
a fixed retry budget and a hard per-attempt timeout; the first endpoint that
answers at the transport level wins and later endpoints are never contacted.
Response bodies are passed through untouched, interpreting them is the
caller's job (see tpn.core.remote).
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

import httpx

from ..config import Settings
from .errors import AllEndpointsFailed

logger = logging.getLogger(__name__)

# Statuses worth another attempt before accepting the response
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

COUNTRY_FORMATS = ("name", "code")


class EndpointClient:
    """
    Synchronous HTTP client with endpoint failover.

    Usage:
        with EndpointClient(settings) as client:
            body = client.fetch("/api/config/countries?format=code")
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the client.

        Args:
            settings: Endpoint list, timeout and retry policy
            transport: Optional httpx transport (tests inject a MockTransport)
            sleep: Function used for the delay between attempts
            clock: Monotonic clock for the per-attempt deadline
        """
        self.settings = settings
        self._sleep = sleep
        self._clock = clock
        self._http_client = httpx.Client(
            transport=transport,
            follow_redirects=True,
            headers={"User-Agent": "tpn-cli"},
        )

    def close(self) -> None:
        """Close the HTTP client."""
        if not self._http_client.is_closed:
            self._http_client.close()

    def __enter__(self) -> "EndpointClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _get_once(self, url: str, timeout: float) -> httpx.Response:
        """
        One GET that must complete within timeout seconds overall.

        httpx applies the timeout to each phase separately, so a server
        trickling its body could outlast it. The body is read in chunks
        against a deadline instead.

        Raises:
            httpx.ReadTimeout: If the deadline passes before the body is read
        """
        deadline = self._clock() + timeout
        with self._http_client.stream("GET", url, timeout=timeout) as response:
            body = bytearray()
            for chunk in response.iter_bytes():
                body.extend(chunk)
                if self._clock() > deadline:
                    raise httpx.ReadTimeout(
                        f"no complete response within {timeout}s", request=response.request
                    )

        # Body is already decoded
        headers = response.headers.copy()
        headers.pop("content-encoding", None)
        headers.pop("content-length", None)
        return httpx.Response(
            response.status_code,
            headers=headers,
            content=bytes(body),
            request=response.request,
        )

    def _get(self, url: str, timeout: float) -> httpx.Response:
        """
        GET a single URL with the configured retry budget.

        Transport errors and transient statuses are retried after a fixed
        delay. When the budget runs out on a transient status the response is
        still returned, since the endpoint was reachable.

        Raises:
            httpx.TransportError: If every attempt failed at the transport level
        """
        attempts = self.settings.retry_attempts
        last_error: Optional[httpx.TransportError] = None

        for attempt in range(1, attempts + 1):
            try:
                response = self._get_once(url, timeout)
            except httpx.TransportError as e:
                last_error = e
                logger.debug(f"Attempt {attempt}/{attempts} for {url} failed: {e!r}")
            else:
                if response.status_code not in TRANSIENT_STATUS_CODES or attempt == attempts:
                    return response
                logger.debug(
                    f"Attempt {attempt}/{attempts} for {url} returned {response.status_code}"
                )

            if attempt < attempts:
                self._sleep(self.settings.retry_delay)

        raise last_error

    def fetch(self, path: str, timeout: Optional[float] = None) -> str:
        """
        Fetch a path from the first endpoint that answers.

        Args:
            path: Path and query appended to each base endpoint
            timeout: Per-attempt timeout override in seconds

        Returns:
            Raw response body

        Raises:
            AllEndpointsFailed: If every endpoint was exhausted
        """
        effective_timeout = timeout if timeout is not None else self.settings.timeout
        errors: List[str] = []

        for base in self.settings.base_urls:
            url = f"{base}{path}"
            logger.debug(f"API call: {url}")
            try:
                response = self._get(url, effective_timeout)
            except httpx.TransportError as e:
                logger.warning(f"Endpoint {base} failed for {path}: {e!r}")
                errors.append(f"{base}: {e!r}")
                continue
            return response.text

        raise AllEndpointsFailed(path, errors)

    def list_countries(self, fmt: str = "name") -> str:
        """List available countries as names or ISO codes."""
        if fmt not in COUNTRY_FORMATS:
            raise ValueError(f"format must be one of {', '.join(COUNTRY_FORMATS)}")
        return self.fetch(f"/api/config/countries?format={fmt}")

    def request_config(
        self,
        country_code: str,
        lease_minutes: int,
        timeout: Optional[float] = None,
    ) -> str:
        """Request a new WireGuard config body for a country and lease length."""
        query = httpx.QueryParams(
            {"format": "text", "geo": country_code, "lease_minutes": str(lease_minutes)}
        )
        return self.fetch(f"/api/config/new?{query}", timeout=timeout)

    def lookup_public_ip(self) -> Optional[str]:
        """
        Ask the IP echo service for our public IPv4 address.

        Diagnostic only: any failure is logged and reported as None.
        """
        url = self.settings.ip_service
        if "://" not in url:
            url = f"https://{url}"
        try:
            response = self._get(url, self.settings.timeout)
        except httpx.TransportError as e:
            logger.debug(f"Public IP lookup failed: {e!r}")
            return None
        if not response.is_success:
            logger.debug(f"Public IP lookup returned {response.status_code}")
            return None
        ip = response.text.strip()
        return ip or None
