"""
Unit tests for presence.realtime.channel.

Tests cover:
  • Transition table
  • Offline on a failed first probe
  • Envelope dispatch (raw and per type)
  • Backoff schedule and exhaustion
  • Manual disconnect / reconnect
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from presence.domain.enums import ChannelSignal, ChannelState, PushEventType
from presence.metrics import metrics_snapshot
from presence.realtime import EventChannel, HealthProbe, Transport, TransportError

DROP = "drop"        # receive() raises TransportError
REFUSE = "refuse"    # open() raises TransportError


class ScriptedTransport(Transport):
    """Each ``open`` consumes one script entry: REFUSE or a list of envelopes."""

    def __init__(self, sessions, block_at_end: bool = False):
        self._sessions = list(sessions)
        self._current = []
        self._block = block_at_end
        self.opens = 0
        self.closes = 0
        self.released = False

    async def open(self):
        self.opens += 1
        if not self._sessions:
            raise TransportError("refused")
        entry = self._sessions.pop(0)
        if entry == REFUSE:
            raise TransportError("refused")
        self._current = list(entry)

    async def receive(self):
        if not self._current:
            if self._block:
                await asyncio.Event().wait()
            return None
        item = self._current.pop(0)
        if item == DROP:
            raise TransportError("reset by peer")
        return item

    async def close(self):
        self.closes += 1

    async def aclose(self):
        await self.close()
        self.released = True


class ScriptedProbe(HealthProbe):
    def __init__(self, *answers: bool):
        self._answers = list(answers)
        self.calls = 0

    async def reachable(self):
        self.calls += 1
        if len(self._answers) > 1:
            return self._answers.pop(0)
        return self._answers[0]


def _envelope(kind: str, **payload):
    return {"type": kind, "payload": payload, "timestamp": "2024-03-04T09:00:00.000Z"}


def _channel(transport, probe, max_attempts=3):
    sleep = AsyncMock()
    channel = EventChannel(
        transport, probe,
        backoff_base_seconds=2.0, backoff_max_seconds=30.0,
        max_attempts=max_attempts, sleep=sleep,
    )
    return channel, sleep


async def _wait_for_state(channel, state, rounds=100):
    for _ in range(rounds):
        if channel.state is state:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"channel never reached {state}, stuck in {channel.state}")


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------

class TestTransitions:
    def test_unknown_pair_ignored(self):
        channel, _ = _channel(ScriptedTransport([]), ScriptedProbe(True))
        assert channel.handle(ChannelSignal.HANDSHAKE) is ChannelState.IDLE

    def test_happy_path(self):
        channel, _ = _channel(ScriptedTransport([]), ScriptedProbe(True))
        seen = []
        channel.on_state_change(lambda old, new: seen.append((old, new)))
        channel.handle(ChannelSignal.CONNECT)
        channel.handle(ChannelSignal.HANDSHAKE)
        channel.handle(ChannelSignal.DROPPED)
        channel.handle(ChannelSignal.EXHAUSTED)
        assert [new for _, new in seen] == [
            ChannelState.CONNECTING, ChannelState.CONNECTED,
            ChannelState.DISCONNECTED, ChannelState.OFFLINE,
        ]

    def test_offline_only_left_by_connect(self):
        channel, _ = _channel(ScriptedTransport([]), ScriptedProbe(True))
        channel.handle(ChannelSignal.CONNECT)
        channel.handle(ChannelSignal.UNREACHABLE)
        assert channel.handle(ChannelSignal.HANDSHAKE) is ChannelState.OFFLINE
        assert channel.handle(ChannelSignal.CONNECT) is ChannelState.CONNECTING


# ---------------------------------------------------------------------------
# Connection loop
# ---------------------------------------------------------------------------

class TestRun:
    @pytest.mark.asyncio
    async def test_unreachable_goes_offline_without_retry(self):
        transport = ScriptedTransport([[]])
        channel, sleep = _channel(transport, ScriptedProbe(False))
        channel.connect()
        await channel.join()

        assert channel.state is ChannelState.OFFLINE
        assert transport.opens == 0
        sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_dispatches_envelopes(self):
        redeemed = _envelope("credential_redeemed", holderIdentity="student-1")
        unknown = _envelope("zoom_meeting")
        transport = ScriptedTransport([[redeemed, unknown]], block_at_end=True)
        channel, _ = _channel(transport, ScriptedProbe(True))

        raw, typed = [], []
        channel.on_event(raw.append)
        channel.on(PushEventType.CREDENTIAL_REDEEMED, typed.append)
        channel.connect()
        await _wait_for_state(channel, ChannelState.CONNECTED)
        for _ in range(10):
            await asyncio.sleep(0)

        assert raw == [redeemed, unknown]
        assert len(typed) == 1
        assert typed[0].payload["holderIdentity"] == "student-1"
        await channel.disconnect()
        assert channel.state is ChannelState.IDLE

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_dispatch(self):
        transport = ScriptedTransport([[_envelope("system_alert"), _envelope("system_alert")]])
        channel, _ = _channel(transport, ScriptedProbe(True), max_attempts=0)
        seen = []

        def boom(_event):
            raise RuntimeError("handler bug")

        channel.on(PushEventType.SYSTEM_ALERT, boom)
        channel.on(PushEventType.SYSTEM_ALERT, seen.append)
        channel.connect()
        await channel.join()
        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_exhaustion_parks_offline(self):
        transport = ScriptedTransport([REFUSE] * 10)
        channel, sleep = _channel(transport, ScriptedProbe(True), max_attempts=3)
        channel.connect()
        await channel.join()

        assert channel.state is ChannelState.OFFLINE
        assert transport.opens == 4
        assert [c.args[0] for c in sleep.call_args_list] == [2.0, 4.0, 8.0]
        assert metrics_snapshot()["reconnect_attempts"] == 3

    @pytest.mark.asyncio
    async def test_no_attempts_after_offline_until_connect(self):
        transport = ScriptedTransport([REFUSE] * 10)
        channel, _ = _channel(transport, ScriptedProbe(True), max_attempts=1)
        channel.connect()
        await channel.join()
        opens = transport.opens
        for _ in range(10):
            await asyncio.sleep(0)
        assert transport.opens == opens

        channel.connect()
        await channel.join()
        assert transport.opens == opens * 2
        assert channel.state is ChannelState.OFFLINE

    @pytest.mark.asyncio
    async def test_successful_handshake_resets_attempts(self):
        first = _envelope("user_signin", username="amy")
        second = _envelope("user_signin", username="ben")
        transport = ScriptedTransport([[first, DROP], [second]])
        channel, sleep = _channel(transport, ScriptedProbe(True), max_attempts=1)
        received = []
        channel.on_event(received.append)
        channel.connect()
        await channel.join()

        assert received == [first, second]
        assert [c.args[0] for c in sleep.call_args_list] == [2.0, 2.0]
        assert transport.opens == 3
        assert channel.state is ChannelState.OFFLINE

    @pytest.mark.asyncio
    async def test_reprobe_before_each_attempt(self):
        transport = ScriptedTransport([REFUSE, []])
        probe = ScriptedProbe(True, False)
        channel, sleep = _channel(transport, probe, max_attempts=5)
        channel.connect()
        await channel.join()

        assert probe.calls == 2
        assert transport.opens == 1
        assert sleep.await_count == 1
        assert channel.state is ChannelState.OFFLINE

    @pytest.mark.asyncio
    async def test_disconnect_while_connected(self):
        transport = ScriptedTransport([[]], block_at_end=True)
        channel, _ = _channel(transport, ScriptedProbe(True))
        channel.connect()
        await _wait_for_state(channel, ChannelState.CONNECTED)

        await channel.disconnect()
        assert channel.state is ChannelState.IDLE
        assert not channel.running
        assert transport.closes >= 1

    @pytest.mark.asyncio
    async def test_aclose_releases_transport(self):
        transport = ScriptedTransport([[]], block_at_end=True)
        channel, _ = _channel(transport, ScriptedProbe(True))
        channel.connect()
        await _wait_for_state(channel, ChannelState.CONNECTED)

        await channel.aclose()
        assert channel.state is ChannelState.IDLE
        assert not channel.running
        assert transport.released

    @pytest.mark.asyncio
    async def test_connect_is_idempotent_while_running(self):
        transport = ScriptedTransport([[]], block_at_end=True)
        channel, _ = _channel(transport, ScriptedProbe(True))
        channel.connect()
        channel.connect()
        await _wait_for_state(channel, ChannelState.CONNECTED)
        assert transport.opens == 1
        await channel.disconnect()
