"""Default HTTP send capability.

The pipeline only needs ``send(payload: dict) -> object`` that raises
TransportError on failure. HttpTransport provides that over httpx; hosts
with their own HTTP stack can inject any callable with the same contract.
"""

from __future__ import annotations

from typing import Any, Self
from urllib.parse import urlparse

import httpx
import structlog

from errorferry import __version__
from errorferry.contracts.errors import TransportError
from errorferry.engine.compression import Compressor

logger = structlog.get_logger(__name__)

USER_AGENT = f"errorferry/{__version__}"


class HttpTransport:
    """POSTs JSON payloads to the collection endpoint.

    Every request carries a timeout, so a hung endpoint blocks a delivery
    attempt for at most ``timeout`` seconds.

    Example:
        transport = HttpTransport(settings.endpoint_url, timeout=settings.retry.attempt_timeout_seconds)
        transport.send(event.to_payload())
    """

    def __init__(
        self,
        endpoint_url: str,
        *,
        timeout: float = 5.0,
        headers: dict[str, str] | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize HTTP transport.

        Args:
            endpoint_url: Collection endpoint URL
            timeout: Per-request timeout in seconds (default: 5.0)
            headers: Extra headers sent with every request
            client: Pre-built httpx.Client (tests inject one with MockTransport)
        """
        self._endpoint_url = endpoint_url
        self._timeout = timeout
        self._headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT, **(headers or {})}
        # httpx.Client is thread-safe; the internal pool handles concurrency.
        self._client = client if client is not None else httpx.Client(timeout=timeout, follow_redirects=False)

    @property
    def endpoint_host(self) -> str:
        # Hostname only: collection URLs often embed a project token in the path
        return urlparse(self._endpoint_url).hostname or "unknown"

    @property
    def closed(self) -> bool:
        return self._client.is_closed

    def send(self, payload: dict[str, Any]) -> httpx.Response:
        """POST payload as JSON.

        Raises:
            TransportError: On network failure, timeout or a non-2xx status.
        """
        headers = dict(self._headers)
        headers.update(Compressor.headers(payload.get("compressed") is True))
        try:
            response = self._client.post(self._endpoint_url, json=payload, headers=headers, timeout=self._timeout)
        except httpx.TimeoutException as e:
            raise TransportError(f"Timed out after {self._timeout}s contacting {self.endpoint_host}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"{type(e).__name__} contacting {self.endpoint_host}: {e}") from e

        if not response.is_success:
            raise TransportError(response.reason_phrase or "request failed", status=response.status_code)
        logger.debug("Payload delivered", host=self.endpoint_host, status=response.status_code)
        return response

    __call__ = send

    def close(self) -> None:
        """Close the underlying httpx client and release connections."""
        self._client.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.close()
