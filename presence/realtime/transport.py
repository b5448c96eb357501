"""
presence.realtime.transport — Push transport and liveness probe.

``HttpStreamTransport`` reads newline-delimited JSON envelopes from a long
running GET (``/api/events`` on the reference app).  Any transport that can
yield decoded envelopes works: implement ``Transport``.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Handshake failed or an open stream broke."""


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class Transport(ABC):
    @abstractmethod
    async def open(self) -> None:
        """Perform the handshake.  Raises ``TransportError``."""

    @abstractmethod
    async def receive(self) -> Optional[Dict[str, Any]]:
        """Next envelope, or None when the peer closed the stream cleanly.

        Raises ``TransportError`` when the stream breaks.
        """

    @abstractmethod
    async def close(self) -> None:
        ...

    async def aclose(self) -> None:
        """Release everything the transport owns; it is not reopened after this."""
        await self.close()


class HttpStreamTransport(Transport):
    def __init__(
        self,
        base_url: str,
        path: str = "/api/events",
        *,
        client: Optional[httpx.AsyncClient] = None,
        connect_timeout_seconds: float = 10.0,
    ) -> None:
        self._url = base_url.rstrip("/") + path
        self._client = client
        self._owns_client = client is None
        self._connect_timeout = connect_timeout_seconds
        self._response: Optional[httpx.Response] = None
        self._lines: Optional[AsyncIterator[str]] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # Streams stay open indefinitely; only the handshake is bounded.
            timeout = httpx.Timeout(self._connect_timeout, read=None)
            self._client = httpx.AsyncClient(timeout=timeout)
        return self._client

    async def open(self) -> None:
        await self.close()
        client = self._get_client()
        try:
            request = client.build_request("GET", self._url, headers={"Accept": "application/x-ndjson"})
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise TransportError(f"handshake with {self._url} failed: {exc}") from exc
        if response.status_code >= 400:
            await response.aclose()
            raise TransportError(f"handshake with {self._url} returned {response.status_code}")
        self._response = response
        self._lines = response.aiter_lines()
        logger.info("Event stream open: %s", self._url)

    async def receive(self) -> Optional[Dict[str, Any]]:
        if self._lines is None:
            raise TransportError("stream is not open")
        while True:
            try:
                line = await self._lines.__anext__()
            except StopAsyncIteration:
                return None
            except httpx.HTTPError as exc:
                raise TransportError(f"stream broke: {exc}") from exc
            line = line.strip()
            if not line:
                continue    # keep-alive
            try:
                envelope = json.loads(line)
            except ValueError:
                logger.warning("Skipping undecodable envelope: %.80s", line)
                continue
            if isinstance(envelope, dict):
                return envelope

    async def close(self) -> None:
        response, self._response, self._lines = self._response, None, None
        if response is not None:
            await response.aclose()

    async def aclose(self) -> None:
        """Close the stream and the client if this transport created it."""
        await self.close()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


# ---------------------------------------------------------------------------
# Liveness probe
# ---------------------------------------------------------------------------

class HealthProbe(ABC):
    @abstractmethod
    async def reachable(self) -> bool:
        ...


class HttpHealthProbe(HealthProbe):
    """GET the liveness path with a short timeout; any 2xx is reachable."""

    def __init__(
        self,
        base_url: str,
        path: str = "/api/health",
        *,
        timeout_seconds: float = 3.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = base_url.rstrip("/") + path
        self._timeout = timeout_seconds
        self._client = client

    async def reachable(self) -> bool:
        try:
            if self._client is not None:
                resp = await self._client.get(self._url, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.get(self._url)
        except httpx.HTTPError as exc:
            logger.info("Health probe %s failed: %s", self._url, exc)
            return False
        return 200 <= resp.status_code < 300
