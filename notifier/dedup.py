#!/usr/bin/env python3
"""
Deduplicator - collapses bursts of near-identical notifications.

The first request of a group is emitted immediately. Requests with the same
group key that arrive within the window are absorbed. When the window closes,
the absorbed requests are turned into one digest notification (or re-emitted
as-is if only one was absorbed).

Group state lives in one dict per lock stripe, so both admission and the
background sweep serialize per key without a global lock.

Usage:
    dedup = Deduplicator(DedupConfig(window_seconds=300))
    if dedup.admit(request, context).emit_now:
        ...
    for pending in dedup.collect_expired():
        dispatcher.dispatch(pending.request, pending.context, internal=True)
"""

import logging
import threading
import time
import zlib
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from core.config_loader import DedupConfig
from notifier.models import NotificationRequest, PriorityHint, RecipientContext

logger = logging.getLogger(__name__)

GroupKeyFunc = Callable[[NotificationRequest], str]

DIGEST_TYPE_NAMES = {
    'task_assigned': 'tasks assigned',
    'task_completed': 'tasks completed',
    'task_overdue': 'overdue tasks',
    'workflow_completed': 'workflows completed',
    'system_announcement': 'system announcements',
}


def default_group_key(request: NotificationRequest) -> str:
    return f"{request.recipient_id}|{request.type}|{request.title}"


@dataclass
class DedupGroup:
    key: str
    first: NotificationRequest
    opened_at: float
    expires_at: float
    absorbed: List[NotificationRequest] = field(default_factory=list)
    context: Optional[RecipientContext] = None


@dataclass
class AdmitResult:
    emit_now: bool
    group_key: str
    absorbed_count: int = 0

    @property
    def suppressed(self) -> bool:
        return not self.emit_now


@dataclass
class PendingDigest:
    """A notification ready to be sent when a dedup window closes."""
    request: NotificationRequest
    context: Optional[RecipientContext]
    group_key: str
    member_count: int


class Deduplicator:

    def __init__(
        self,
        config: Optional[DedupConfig] = None,
        key_func: Optional[GroupKeyFunc] = None,
        clock: Callable[[], float] = time.time,
        stripes: int = 64
    ):
        self.config = config or DedupConfig()
        self.key_func = key_func or default_group_key
        self._clock = clock
        self._locks = [threading.Lock() for _ in range(stripes)]
        self._groups: List[Dict[str, DedupGroup]] = [{} for _ in range(stripes)]
        self._ready: List[PendingDigest] = []
        self._ready_lock = threading.Lock()

    def _stripe(self, key: str) -> int:
        return zlib.crc32(key.encode('utf-8')) % len(self._locks)

    def _close_group(self, group: DedupGroup) -> Optional[PendingDigest]:
        """Turn a finished group into a pending digest, if anything was absorbed."""
        if not group.absorbed:
            return None
        request = self.digest(group.absorbed)
        return PendingDigest(
            request=request,
            context=group.context,
            group_key=group.key,
            member_count=len(group.absorbed),
        )

    def admit(self, request: NotificationRequest, context: Optional[RecipientContext] = None) -> AdmitResult:
        """Emit the first request of a group; absorb the rest until the window closes."""
        key = self.key_func(request)
        if not self.config.enabled:
            return AdmitResult(emit_now=True, group_key=key)

        now = self._clock()
        index = self._stripe(key)
        with self._locks[index]:
            groups = self._groups[index]
            group = groups.get(key)

            if group is not None and group.expires_at <= now:
                del groups[key]
                pending = self._close_group(group)
                if pending is not None:
                    with self._ready_lock:
                        self._ready.append(pending)
                group = None

            if group is None:
                groups[key] = DedupGroup(
                    key=key,
                    first=request,
                    opened_at=now,
                    expires_at=now + self.config.window_seconds,
                    context=context,
                )
                return AdmitResult(emit_now=True, group_key=key)

            group.absorbed.append(request)
            if context is not None:
                group.context = context
            logger.debug(f"Absorbed duplicate into group {key} ({len(group.absorbed)} pending)")
            return AdmitResult(emit_now=False, group_key=key, absorbed_count=len(group.absorbed))

    def collect_expired(self, now: Optional[float] = None) -> List[PendingDigest]:
        """Close every expired group and return the digests ready to send."""
        now = self._clock() if now is None else now
        ready = []
        for index, lock in enumerate(self._locks):
            with lock:
                groups = self._groups[index]
                expired = [k for k, g in groups.items() if g.expires_at <= now]
                for key in expired:
                    pending = self._close_group(groups.pop(key))
                    if pending is not None:
                        ready.append(pending)

        with self._ready_lock:
            ready = self._ready + ready
            self._ready = []

        if ready:
            logger.info(f"Collected {len(ready)} digest(s) from expired dedup groups")
        return ready

    @staticmethod
    def digest(requests: List[NotificationRequest]) -> Optional[NotificationRequest]:
        """
        Summarize absorbed requests.

        One request is returned unchanged. Two or more become a single
        "digest" notification counting the members per type.
        """
        if not requests:
            return None
        if len(requests) == 1:
            return requests[0]

        counts: Dict[str, int] = OrderedDict()
        for request in requests:
            counts[request.type] = counts.get(request.type, 0) + 1

        parts = [
            f"{count} {DIGEST_TYPE_NAMES.get(type_name, type_name.replace('_', ' '))}"
            for type_name, count in counts.items()
        ]
        return NotificationRequest(
            recipient_id=requests[0].recipient_id,
            type='digest',
            title=f"You have {len(requests)} new notifications",
            body=f"Summary: {', '.join(parts)}.",
            priority_hint=PriorityHint.MEDIUM,
            payload={
                'digest': True,
                'notification_count': len(requests),
                'types': list(counts.keys()),
                'notifications': [
                    {'type': r.type, 'title': r.title, 'created_at': r.created_at}
                    for r in requests
                ],
            },
        )

    def active_groups(self) -> int:
        total = 0
        for index, lock in enumerate(self._locks):
            with lock:
                total += len(self._groups[index])
        return total

    def pending_digests(self) -> int:
        """Groups holding absorbed requests plus digests already waiting to be flushed."""
        total = 0
        for index, lock in enumerate(self._locks):
            with lock:
                total += sum(1 for g in self._groups[index].values() if g.absorbed)
        with self._ready_lock:
            return total + len(self._ready)
