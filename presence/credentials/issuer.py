"""
presence.credentials.issuer — Credential minting and rotation.

The issuer keeps two credentials at all times while active:

  • current — the one rendered on the station display and redeemable now
  • next    — pre-issued for the following window, shown as a preview only

When the current credential's remaining time reaches zero the issuer promotes
"next" and pre-issues a fresh one, so the display never shows an expired code
even when the timer fires late.  Each rotation is appended to a bounded
history ring (most recent first).

The async driver is meant to run as a background task::

    issuer = CredentialIssuer("main_hall", issuer_identity="admin")
    asyncio.create_task(issuer.run(stop_event))
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import secrets
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, List, Optional

from presence.core.constants import (
    CREDENTIAL_ID_PREFIX, DEFAULT_HISTORY_SIZE, DEFAULT_TTL_SECONDS,
)
from presence.core.utils import clamp, epoch_ms, truncate_ms, utc_now
from presence.domain.enums import CredentialStatus, IssuerAction, PushEventType
from presence.domain.models import Credential, HistoryEntry, PushEvent

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
IssuerListener = Callable[[PushEvent], None]


# ---------------------------------------------------------------------------
# Issuance policy
# ---------------------------------------------------------------------------

def compute_checksum(credential_id: str, issued_at: datetime) -> str:
    """Deterministic encoding of ``(id, issued_at)``.

    Catches typos and casual edits of a scanned payload; it is not a
    signature.
    """
    raw = f"{credential_id}_{epoch_ms(issued_at)}".encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def verify_checksum(credential_id: str, issued_at: datetime, checksum: str) -> bool:
    try:
        decoded = base64.b64decode(checksum.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError):
        return False
    expected = f"{credential_id}_{epoch_ms(issued_at)}".encode("utf-8")
    return secrets.compare_digest(decoded, expected)


def issue(
    boundary_tag: str,
    issuer_identity: Optional[str],
    now: datetime,
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
) -> Credential:
    """Mint a credential valid for ``[now, now + ttl)``. Never fails."""
    issued_at = truncate_ms(now)
    # Millisecond stamp alone collides when two stations issue in the same tick
    credential_id = f"{CREDENTIAL_ID_PREFIX}_{epoch_ms(issued_at)}_{secrets.token_hex(4)}"
    return Credential(
        id=credential_id,
        issued_at=issued_at,
        expires_at=issued_at + timedelta(seconds=ttl_seconds),
        checksum=compute_checksum(credential_id, issued_at),
        boundary_tag=boundary_tag,
        issuer_identity=issuer_identity,
    )


# ---------------------------------------------------------------------------
# Issuer
# ---------------------------------------------------------------------------

class CredentialIssuer:
    """Owns the current/next credential pair and the issuance history."""

    def __init__(
        self,
        boundary_tag: str,
        issuer_identity: Optional[str] = None,
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        history_size: int = DEFAULT_HISTORY_SIZE,
        clock: Clock = utc_now,
    ) -> None:
        self.boundary_tag = boundary_tag
        self.issuer_identity = issuer_identity
        self.ttl_seconds = int(ttl_seconds)
        self._clock = clock
        self._current: Optional[Credential] = None
        self._next: Optional[Credential] = None
        self._history: Deque[HistoryEntry] = deque(maxlen=max(1, int(history_size)))
        self._active = False
        self._rotations = 0
        self._listeners: List[IssuerListener] = []

    # -- read-only views --------------------------------------------------

    @property
    def active(self) -> bool:
        return self._active

    @property
    def current(self) -> Optional[Credential]:
        return self._current

    @property
    def next(self) -> Optional[Credential]:
        return self._next

    @property
    def history(self) -> List[HistoryEntry]:
        """Most recent first."""
        return list(self._history)

    @property
    def rotation_count(self) -> int:
        return self._rotations

    def remaining_seconds(self, now: Optional[datetime] = None) -> float:
        """Seconds until the current credential expires, clamped to ``[0, ttl]``.

        A host clock set backwards would otherwise show a countdown longer
        than the window; one set forwards would show a negative one.
        """
        if self._current is None:
            return 0.0
        now = now or self._clock()
        remaining = (self._current.expires_at - now).total_seconds()
        return clamp(remaining, 0.0, float(self.ttl_seconds))

    def subscribe(self, listener: IssuerListener) -> None:
        self._listeners.append(listener)

    # -- lifecycle --------------------------------------------------------

    def _issue(self, at: datetime) -> Credential:
        return issue(self.boundary_tag, self.issuer_identity, at, self.ttl_seconds)

    def start(self, now: Optional[datetime] = None) -> Credential:
        """Issue the first current/next pair. Idempotent while active."""
        if self._active and self._current is not None:
            return self._current
        now = now or self._clock()
        self._current = self._issue(now)
        self._next = self._issue(self._current.expires_at)
        self._active = True
        self._history.appendleft(HistoryEntry(self._current, generated_at=now))
        logger.info("Issuer started: current=%s next=%s", self._current.id, self._next.id)
        self._emit(IssuerAction.STARTED, now)
        return self._current

    def rotate(self, now: Optional[datetime] = None) -> Optional[Credential]:
        """Promote "next" to "current" and pre-issue a new "next".

        The pre-issued credential is promoted as-is when its window covers
        ``now``.  A manual refresh before that window, or a resume after the
        process slept past it, mints a fresh current instead so the display
        never shows a stale or not-yet-started code.
        """
        if not self._active:
            return None
        now = now or self._clock()

        promoted = self._next
        if promoted is None or not (promoted.issued_at <= now < promoted.expires_at):
            promoted = self._issue(now)

        for entry in self._history:
            if entry.status is CredentialStatus.ACTIVE:
                entry.status = CredentialStatus.EXPIRED

        self._current = promoted
        self._next = self._issue(promoted.expires_at)
        self._history.appendleft(HistoryEntry(promoted, generated_at=now))
        self._rotations += 1
        logger.info("Credential rotated: current=%s next=%s", promoted.id, self._next.id)
        self._emit(IssuerAction.ROTATED, now)
        return promoted

    def refresh(self, now: Optional[datetime] = None) -> Credential:
        """Manual refresh: rotate when active, otherwise start."""
        rotated = self.rotate(now) if self._active else None
        return rotated or self.start(now)

    def tick(self, now: Optional[datetime] = None) -> bool:
        """Rotate if the current window has run out. Returns True on rotation."""
        if not self._active or self._current is None:
            return False
        now = now or self._clock()
        if self.remaining_seconds(now) > 0:
            return False
        self.rotate(now)
        return True

    def stop(self, now: Optional[datetime] = None) -> None:
        if not self._active:
            return
        now = now or self._clock()
        self._active = False
        self._current = None
        self._next = None
        for entry in self._history:
            if entry.status is CredentialStatus.ACTIVE:
                entry.status = CredentialStatus.STOPPED
        logger.info("Issuer stopped after %d rotation(s)", self._rotations)
        self._emit(IssuerAction.STOPPED, now)

    async def run(self, stop_event: asyncio.Event, interval_seconds: float = 1.0) -> None:
        """Tick until ``stop_event`` is set or ``stop()`` is called."""
        self.start()
        interval = max(0.05, float(interval_seconds))
        while self._active and not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            # stop() may have run while we were waiting
            if not self._active:
                break
            try:
                self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Issuer tick failed")
        self.stop()

    # -- listeners --------------------------------------------------------

    def _emit(self, action: IssuerAction, now: datetime) -> None:
        payload = {
            "action": action.value,
            "boundaryTag": self.boundary_tag,
            "issuer": self.issuer_identity,
            "credentialId": self._current.id if self._current else None,
            "nextCredentialId": self._next.id if self._next else None,
        }
        event = PushEvent(type=PushEventType.ISSUER_LIFECYCLE, payload=payload, timestamp=now)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Issuer listener failed for %s", action.value)
