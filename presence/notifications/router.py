"""
presence.notifications.router — Turn push events into a bounded dashboard feed.

Pipeline for every inbound event::

    classify ─> dedup (message, category) ─> insert newest-first
             ─> evict oldest non-persistent over capacity
             ─> notify observers ─> escalate (fire-and-forget)

The transport gives no gap-free ordering across reconnects, so the same
event can arrive twice; the dedup window absorbs that.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from presence.core.constants import (
    DEFAULT_DEDUP_WINDOW_SECONDS, DEFAULT_FEED_CAPACITY, DEFAULT_RETENTION_DAYS,
)
from presence.core.utils import epoch_ms, utc_now
from presence.domain.enums import (
    IssuerAction, NotificationCategory, NotificationPriority, PushEventType,
)
from presence.domain.models import NotificationRecord, PushEvent
from presence.geo import format_distance
from presence.metrics import increment_deduplicated
from presence.notifications.escalation import Escalator, NullEscalator

logger = logging.getLogger(__name__)

FeedListener = Callable[[List[NotificationRecord]], None]

P = NotificationPriority
C = NotificationCategory

# Categories forwarded upstream regardless of priority.
_ESCALATED_CATEGORIES = {C.PRESENCE, C.SIGNIN}


# ---------------------------------------------------------------------------
# Classification table
# ---------------------------------------------------------------------------

def _redeemed(payload: Dict[str, Any]) -> Tuple[str, str, C, P, Optional[str]]:
    holder = payload.get("holderIdentity") or "A participant"
    distance = payload.get("distanceMeters")
    where = f" ({format_distance(float(distance))} from centre)" if isinstance(distance, (int, float)) else ""
    return ("Attendance Recorded", f"{holder} marked present{where}",
            C.PRESENCE, P.MEDIUM, "/attendance")


def _lifecycle(payload: Dict[str, Any]) -> Tuple[str, str, C, P, Optional[str]]:
    action = payload.get("action")
    tag = payload.get("boundaryTag") or "session"
    if action == IssuerAction.STOPPED.value:
        return ("Attendance Stopped", f"Attendance check for {tag} stopped",
                C.LIFECYCLE, P.MEDIUM, None)
    if action == IssuerAction.ROTATED.value:
        credential_id = payload.get("credentialId")
        suffix = f" ({credential_id})" if credential_id else ""
        return ("Code Rotated", f"New attendance code for {tag}{suffix}",
                C.ISSUANCE, P.LOW, None)
    return ("Attendance Started", f"Attendance check for {tag} started",
            C.ISSUANCE, P.LOW, None)


def _system_alert(payload: Dict[str, Any]) -> Tuple[str, str, C, P, Optional[str]]:
    urgent = payload.get("urgent") is True or payload.get("priority") == P.URGENT.value
    return (str(payload.get("title") or ("Urgent Notice" if urgent else "System Alert")),
            str(payload.get("message") or "System alert"),
            C.SYSTEM, P.URGENT if urgent else P.HIGH, payload.get("actionRef"))


def _signin(payload: Dict[str, Any]) -> Tuple[str, str, C, P, Optional[str]]:
    who = payload.get("fullName") or payload.get("username") or payload.get("holderIdentity") or "A user"
    role = payload.get("role")
    title = "Admin Sign In" if role in ("admin", "teacher") else "User Sign In"
    return (title, f"{who} signed in", C.SIGNIN, P.LOW, None)


_CLASSIFIERS = {
    PushEventType.CREDENTIAL_REDEEMED: _redeemed,
    PushEventType.ISSUER_LIFECYCLE:    _lifecycle,
    PushEventType.SYSTEM_ALERT:        _system_alert,
    PushEventType.USER_SIGNIN:         _signin,
}


def _enum_or(enum_cls, value: Any, default):
    try:
        return enum_cls(value)
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class NotificationRouter:
    def __init__(
        self,
        escalator: Optional[Escalator] = None,
        *,
        dedup_window_seconds: float = DEFAULT_DEDUP_WINDOW_SECONDS,
        capacity: int = DEFAULT_FEED_CAPACITY,
        retention_days: float = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._escalator = escalator or NullEscalator()
        self._dedup_window = timedelta(seconds=max(0.0, dedup_window_seconds))
        self._capacity = max(1, int(capacity))
        self._retention = timedelta(days=retention_days)
        self._clock = clock

        self._feed: List[NotificationRecord] = []     # newest first
        self._last_accepted: Dict[Tuple[str, C], datetime] = {}
        self._listeners: List[FeedListener] = []
        self._tasks: Set[asyncio.Task] = set()

    # -- views --------------------------------------------------------------

    @property
    def feed(self) -> List[NotificationRecord]:
        return list(self._feed)

    def unread_count(self) -> int:
        return sum(1 for r in self._feed if not r.read)

    def by_category(self, category: NotificationCategory) -> List[NotificationRecord]:
        category = NotificationCategory(category)
        return [r for r in self._feed if r.category is category]

    def subscribe(self, listener: FeedListener) -> None:
        self._listeners.append(listener)

    # -- intake -------------------------------------------------------------

    def classify(self, event: PushEvent) -> Optional[NotificationRecord]:
        payload = event.payload
        persistent = False
        if event.type is PushEventType.NOTIFICATION:
            message = payload.get("message")
            if not message:
                return None
            title = str(payload.get("title") or "")
            category = _enum_or(NotificationCategory, payload.get("category"), C.SYSTEM)
            priority = _enum_or(NotificationPriority, payload.get("priority"), P.MEDIUM)
            action_ref = payload.get("actionRef")
            persistent = payload.get("persistent") is True
        else:
            classifier = _CLASSIFIERS.get(event.type)
            if classifier is None:
                return None
            title, message, category, priority, action_ref = classifier(payload)
        persistent = persistent or priority is P.URGENT

        now = self._clock()
        return NotificationRecord(
            id=f"notif_{epoch_ms(now)}_{secrets.token_hex(3)}",
            category=category,
            priority=priority,
            message=str(message),
            timestamp=now,
            title=title,
            action_ref=action_ref,
            persistent=persistent,
        )

    def submit(self, event: PushEvent) -> Optional[NotificationRecord]:
        """Channel callback: classify ``event`` and add it to the feed."""
        record = self.classify(event)
        if record is None:
            logger.debug("No notification for %s event", event.type.value)
            return None
        return record if self.add(record) else None

    def add(self, record: NotificationRecord) -> bool:
        """Insert ``record``; False when it duplicates a recent one."""
        key = (record.message, record.category)
        last = self._last_accepted.get(key)
        if last is not None and abs(record.timestamp - last) < self._dedup_window:
            increment_deduplicated()
            logger.debug("Duplicate notification dropped: %s", record.message)
            return False
        self._last_accepted[key] = record.timestamp
        self._prune_dedup(record.timestamp)

        self._feed.insert(0, record)
        self._enforce_capacity()
        self._notify()
        if self._should_escalate(record):
            self._spawn_escalation(record)
        return True

    # -- feed operations ----------------------------------------------------

    def mark_read(self, record_id: str) -> bool:
        for record in self._feed:
            if record.id == record_id:
                if not record.read:
                    record.read = True
                    self._notify()
                return True
        return False

    def mark_all_read(self) -> int:
        changed = 0
        for record in self._feed:
            if not record.read:
                record.read = True
                changed += 1
        if changed:
            self._notify()
        return changed

    def remove(self, record_id: str) -> bool:
        before = len(self._feed)
        self._feed = [r for r in self._feed if r.id != record_id]
        if len(self._feed) != before:
            self._notify()
            return True
        return False

    def clear(self) -> None:
        self._feed.clear()
        self._notify()

    def evict_expired(self, now: Optional[datetime] = None) -> int:
        """Drop non-persistent records older than the retention window."""
        cutoff = (now or self._clock()) - self._retention
        kept = [r for r in self._feed if r.persistent or r.timestamp > cutoff]
        evicted = len(self._feed) - len(kept)
        if evicted:
            self._feed = kept
            logger.info("Evicted %d notifications past retention", evicted)
            self._notify()
        return evicted

    async def drain(self) -> None:
        """Wait for pending escalations (tests, shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- internals ----------------------------------------------------------

    def _enforce_capacity(self) -> None:
        while len(self._feed) > self._capacity:
            for idx in range(len(self._feed) - 1, -1, -1):
                if not self._feed[idx].persistent:
                    del self._feed[idx]
                    break
            else:
                return      # only persistent records left

    def _prune_dedup(self, now: datetime) -> None:
        stale = [k for k, ts in self._last_accepted.items() if now - ts >= self._dedup_window]
        for key in stale:
            del self._last_accepted[key]

    def _notify(self) -> None:
        snapshot = self.feed
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Feed listener failed")

    @staticmethod
    def _should_escalate(record: NotificationRecord) -> bool:
        return (
            record.priority.at_least(P.HIGH)
            or record.persistent
            or record.category in _ESCALATED_CATEGORIES
        )

    def _spawn_escalation(self, record: NotificationRecord) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No event loop; notification %s not escalated", record.id)
            return
        task = loop.create_task(self._escalate(record))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _escalate(self, record: NotificationRecord) -> None:
        try:
            sent = await self._escalator.send(record)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Escalation of %s failed", record.id)
            return
        if not sent:
            logger.debug("Notification %s not escalated", record.id)
