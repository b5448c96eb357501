"""
presence.realtime.channel — Reconnecting push-event client.

State machine::

    IDLE ──connect──> CONNECTING ──handshake──> CONNECTED
                          │  ▲                      │
              unreachable │  │ retry          dropped│
                          ▼  │                      ▼
                       OFFLINE <──exhausted── DISCONNECTED

Every transition goes through ``handle(signal)`` and the ``_TRANSITIONS``
table; pairs missing from the table are ignored.  A failed liveness probe
parks the channel in OFFLINE without retrying; a broken stream is retried
with exponential backoff until ``max_attempts`` is spent.  Only a manual
``connect()`` leaves OFFLINE.

Usage::

    channel = EventChannel(transport, probe)
    channel.on(PushEventType.CREDENTIAL_REDEEMED, router.submit)
    channel.connect()
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional

from presence.core.constants import (
    DEFAULT_BACKOFF_BASE_SECONDS, DEFAULT_BACKOFF_MAX_SECONDS, DEFAULT_MAX_ATTEMPTS,
)
from presence.core.utils import backoff_delay
from presence.domain.enums import ChannelSignal, ChannelState, PushEventType
from presence.domain.models import PushEvent
from presence.metrics import increment_reconnect_attempts
from presence.realtime.transport import HealthProbe, Transport, TransportError

logger = logging.getLogger(__name__)

EnvelopeCallback = Callable[[Dict[str, Any]], None]
EventCallback = Callable[[PushEvent], None]
StateListener = Callable[[ChannelState, ChannelState], None]
SleepFn = Callable[[float], Awaitable[None]]

S = ChannelState
G = ChannelSignal

_TRANSITIONS: Dict[tuple, ChannelState] = {
    (S.IDLE,         G.CONNECT):     S.CONNECTING,
    (S.DISCONNECTED, G.CONNECT):     S.CONNECTING,
    (S.OFFLINE,      G.CONNECT):     S.CONNECTING,
    (S.CONNECTING,   G.HANDSHAKE):   S.CONNECTED,
    (S.CONNECTING,   G.UNREACHABLE): S.OFFLINE,
    (S.CONNECTING,   G.DROPPED):     S.DISCONNECTED,
    (S.CONNECTED,    G.DROPPED):     S.DISCONNECTED,
    (S.DISCONNECTED, G.EXHAUSTED):   S.OFFLINE,
    (S.CONNECTING,   G.CLOSE):       S.IDLE,
    (S.CONNECTED,    G.CLOSE):       S.IDLE,
    (S.DISCONNECTED, G.CLOSE):       S.IDLE,
    (S.OFFLINE,      G.CLOSE):       S.IDLE,
}


class EventChannel:
    def __init__(
        self,
        transport: Transport,
        probe: HealthProbe,
        *,
        backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
        backoff_max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._probe = probe
        self._base = backoff_base_seconds
        self._cap = max(backoff_base_seconds, backoff_max_seconds)
        self._max_attempts = max(0, int(max_attempts))
        self._sleep = sleep

        self._state = ChannelState.IDLE
        self._attempts = 0
        self._task: Optional[asyncio.Task] = None
        self._raw_callbacks: List[EnvelopeCallback] = []
        self._typed_callbacks: Dict[PushEventType, List[EventCallback]] = defaultdict(list)
        self._state_listeners: List[StateListener] = []

    # -- views --------------------------------------------------------------

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def attempts(self) -> int:
        """Reconnect attempts since the last successful handshake."""
        return self._attempts

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # -- registration -------------------------------------------------------

    def on_event(self, callback: EnvelopeCallback) -> None:
        """Receive every envelope exactly as it arrived."""
        self._raw_callbacks.append(callback)

    def on(self, event_type: PushEventType, callback: EventCallback) -> None:
        self._typed_callbacks[PushEventType(event_type)].append(callback)

    def on_state_change(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    # -- state machine ------------------------------------------------------

    def handle(self, signal: ChannelSignal) -> ChannelState:
        target = _TRANSITIONS.get((self._state, signal))
        if target is None:
            logger.debug("Channel ignores %s in %s", signal.value, self._state.value)
            return self._state
        old, self._state = self._state, target
        logger.info("Event channel %s -> %s", old.value, target.value)
        for listener in list(self._state_listeners):
            try:
                listener(old, target)
            except Exception:
                logger.exception("Channel state listener failed")
        return target

    # -- control ------------------------------------------------------------

    def connect(self) -> None:
        """Start (or restart after OFFLINE) the connection loop."""
        if self.running:
            return
        self._attempts = 0
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def disconnect(self) -> None:
        task, self._task = self._task, None
        self.handle(ChannelSignal.CLOSE)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._transport.close()

    async def aclose(self) -> None:
        """Disconnect for good and release the transport's client."""
        await self.disconnect()
        await self._transport.aclose()

    async def join(self) -> None:
        """Wait for the connection loop to finish (OFFLINE or disconnected)."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    # -- loop ---------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            self.handle(ChannelSignal.CONNECT)

            if not await self._probe.reachable():
                logger.warning("Event source unreachable; running offline")
                self.handle(ChannelSignal.UNREACHABLE)
                return

            try:
                await self._transport.open()
            except TransportError as exc:
                logger.warning("Event channel handshake failed: %s", exc)
            else:
                self._attempts = 0
                self.handle(ChannelSignal.HANDSHAKE)
                await self._pump()
            await self._transport.close()
            self.handle(ChannelSignal.DROPPED)

            if self._attempts >= self._max_attempts:
                logger.warning("Event channel gave up after %d attempts", self._attempts)
                self.handle(ChannelSignal.EXHAUSTED)
                return

            delay = backoff_delay(self._attempts, self._base, self._cap)
            self._attempts += 1
            increment_reconnect_attempts()
            logger.info(
                "Reconnecting in %.1fs (attempt %d/%d)",
                delay, self._attempts, self._max_attempts,
            )
            await self._sleep(delay)

    async def _pump(self) -> None:
        while self._state is ChannelState.CONNECTED:
            try:
                envelope = await self._transport.receive()
            except asyncio.CancelledError:
                raise
            except TransportError as exc:
                logger.warning("Event stream dropped: %s", exc)
                return
            if envelope is None:
                logger.info("Event stream closed by peer")
                return
            self._dispatch(envelope)

    def _dispatch(self, envelope: Dict[str, Any]) -> None:
        for callback in list(self._raw_callbacks):
            try:
                callback(envelope)
            except Exception:
                logger.exception("Envelope callback failed")

        event = PushEvent.from_envelope(envelope)
        if event is None:
            logger.debug("Ignoring envelope of unknown type %r", envelope.get("type"))
            return
        for callback in list(self._typed_callbacks.get(event.type, ())):
            try:
                callback(event)
            except Exception:
                logger.exception("%s callback failed", event.type.value)
