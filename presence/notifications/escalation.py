"""
presence.notifications.escalation — Forward important notifications upstream.

Design: every escalator implements the ``Escalator`` ABC with a single async
``send(record)`` method.  The router calls it fire-and-forget, so an
implementation must never raise: report failure by returning False.

Current implementations:
    HttpEscalator       — POST to the store's ``/api/notifications``
    CompositeEscalator  — fan-out to several escalators
    NullEscalator       — drop (escalation disabled, tests)
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx

from presence.api.schemas import NotificationIn
from presence.domain.models import NotificationRecord
from presence.metrics import increment_escalations

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Abstract base
# ---------------------------------------------------------------------------

class Escalator(ABC):
    @abstractmethod
    async def send(self, record: NotificationRecord) -> bool:
        """Forward ``record``.  Returns True on success, False on failure."""


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

class HttpEscalator(Escalator):
    def __init__(
        self,
        base_url: str,
        path: str = "/api/notifications",
        *,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = base_url.rstrip("/") + path
        self._timeout = timeout_seconds
        self._client = client

    async def send(self, record: NotificationRecord) -> bool:
        body = NotificationIn(
            id=record.id,
            title=record.title,
            message=record.message,
            category=record.category.value,
            priority=record.priority.value,
            timestamp=record.timestamp,
            read=record.read,
            action_ref=record.action_ref,
            persistent=record.persistent,
        ).model_dump(by_alias=True, mode="json")
        try:
            if self._client is not None:
                resp = await self._client.post(self._url, json=body, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(self._url, json=body)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("HttpEscalator: %s", exc)
            return False
        increment_escalations()
        return True


# ---------------------------------------------------------------------------
# Composite fan-out
# ---------------------------------------------------------------------------

class CompositeEscalator(Escalator):
    def __init__(self, escalators: List[Escalator]) -> None:
        self._escalators = escalators

    async def send(self, record: NotificationRecord) -> bool:
        results = await asyncio.gather(
            *[e.send(record) for e in self._escalators],
            return_exceptions=True,
        )
        return any(r is True for r in results)


# ---------------------------------------------------------------------------
# No-op
# ---------------------------------------------------------------------------

class NullEscalator(Escalator):
    async def send(self, record: NotificationRecord) -> bool:
        logger.debug("NullEscalator: dropped %s notification %s", record.category.value, record.id)
        return False


def build_escalator(enabled: bool, base_url: str, timeout_seconds: float = 10.0) -> Escalator:
    if enabled and base_url:
        return HttpEscalator(base_url, timeout_seconds=timeout_seconds)
    return NullEscalator()
