"""Nightscout API pre-flight checks."""

from __future__ import annotations

import hashlib
import logging
from typing import Protocol
from urllib.parse import urljoin

import httpx

logger = logging.getLogger(__name__)

STATUS_PATH = "api/v1/status.json"
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_USER_AGENT = "nightscout-tuner/1.0"


class EndpointVerifier(Protocol):
    """Checks whether a Nightscout site can be read with the given credentials."""

    def verify(self, url: str, token: str | None = None) -> bool:
        """Return ``True`` when the site API is reachable."""


def hash_access_token(token: str) -> str:
    """Nightscout expects the SHA-1 hex digest of the secret, not the secret itself."""

    return hashlib.sha1(token.encode("utf-8")).hexdigest()  # noqa: S324


class NightscoutClient:
    """Minimal Nightscout HTTP client used before spawning autotune."""

    def __init__(
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = 1,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 10.0)),
            headers={"User-Agent": DEFAULT_USER_AGENT, "Accept": "application/json"},
            transport=transport or httpx.HTTPTransport(retries=max_retries),
            follow_redirects=True,
        )

    def verify(self, url: str, token: str | None = None) -> bool:
        """Verify the Nightscout API can be accessed using the url and optional token."""

        status_url = urljoin(url if url.endswith("/") else f"{url}/", STATUS_PATH)
        params = {"token": hash_access_token(token)} if token else None
        try:
            response = self._client.get(status_url, params=params)
        except httpx.HTTPError as exc:
            logger.warning("Nightscout API verification failed for %s: %s", url, exc)
            return False

        if response.is_success:
            return True
        logger.warning(
            "Nightscout API verification failed for %s. HTTP %s: %s",
            url,
            response.status_code,
            response.reason_phrase,
        )
        return False

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> NightscoutClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
