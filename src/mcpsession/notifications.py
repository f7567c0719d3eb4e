"""
Notification gate and resource subscription table.

Outbound server notifications are advisory: when the gate refuses one, the
caller skips sending it and nothing reaches the peer. A refusal caused by a
capability the sender never declared is a local bug, so it is counted and
logged as a warning. Refusals that are part of normal operation (no
subscribers, below the peer's log level, session not ready) are counted
separately at debug level.
"""

import asyncio
from collections import Counter
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Dict, FrozenSet, List, Mapping, Optional, Set, Union

from common.logging import get_logger
from .errors import SessionClosedError
from .jsonrpc import LoggingLevel, MCPMethods
from .requirements import METHOD_REQUIREMENTS

if TYPE_CHECKING:
    from .session import Session

logger = get_logger(__name__)


class NotificationKind(str, Enum):
    """Server-initiated notifications subject to gating."""

    RESOURCE_UPDATED = "resource-updated"
    RESOURCE_LIST_CHANGED = "resource-list-changed"
    TOOL_LIST_CHANGED = "tool-list-changed"
    PROMPT_LIST_CHANGED = "prompt-list-changed"
    LOG_MESSAGE = "log-message"


NOTIFICATION_METHODS: Mapping[NotificationKind, str] = MappingProxyType(
    {
        NotificationKind.RESOURCE_UPDATED: MCPMethods.RESOURCES_UPDATED,
        NotificationKind.RESOURCE_LIST_CHANGED: MCPMethods.RESOURCES_LIST_CHANGED,
        NotificationKind.TOOL_LIST_CHANGED: MCPMethods.TOOLS_LIST_CHANGED,
        NotificationKind.PROMPT_LIST_CHANGED: MCPMethods.PROMPTS_LIST_CHANGED,
        NotificationKind.LOG_MESSAGE: MCPMethods.LOGGING_MESSAGE,
    }
)


class SubscriptionTable:
    """
    Resource URI -> subscriber ids.

    Mutations take a per-URI lock drawn from a fixed pool of shards, so
    subscribe/unsubscribe on one URI never wait on another URI.
    """

    def __init__(self, shards: int = 16):
        self._subscriptions: Dict[str, Set[str]] = {}
        self._locks = [asyncio.Lock() for _ in range(max(1, shards))]
        self._closed = False

    def _lock_for(self, uri: str) -> asyncio.Lock:
        return self._locks[hash(uri) % len(self._locks)]

    async def add(self, uri: str, subscriber: str) -> bool:
        """Add ``subscriber`` to ``uri``. Returns False if it was already subscribed."""
        async with self._lock_for(uri):
            if self._closed:
                raise SessionClosedError("Subscription table has been released")
            subscribers = self._subscriptions.setdefault(uri, set())
            if subscriber in subscribers:
                return False
            subscribers.add(subscriber)
            return True

    async def remove(self, uri: str, subscriber: str) -> bool:
        """Remove ``subscriber``; the URI entry disappears with its last subscriber."""
        async with self._lock_for(uri):
            subscribers = self._subscriptions.get(uri)
            if not subscribers or subscriber not in subscribers:
                return False
            subscribers.discard(subscriber)
            if not subscribers:
                del self._subscriptions[uri]
            return True

    async def subscribers(self, uri: str) -> FrozenSet[str]:
        async with self._lock_for(uri):
            return frozenset(self._subscriptions.get(uri, ()))

    def has_subscribers(self, uri: str) -> bool:
        return bool(self._subscriptions.get(uri))

    def uris(self) -> List[str]:
        return list(self._subscriptions)

    def clear(self) -> List[str]:
        """Drop every subscription and refuse new ones. Returns the dropped URIs."""
        self._closed = True
        dropped = list(self._subscriptions)
        self._subscriptions.clear()
        return dropped

    def __len__(self) -> int:
        return len(self._subscriptions)


class NotificationGate:
    """Decides whether a server-initiated notification may be sent."""

    def __init__(self) -> None:
        # Denied because the sender never declared the capability
        self.suppressed: Counter = Counter()
        # Dropped during normal operation
        self.dropped: Counter = Counter()

    def guard_notify(
        self,
        kind: Union[NotificationKind, str],
        session: "Session",
        uri: Optional[str] = None,
        level: Optional[Union[LoggingLevel, str]] = None,
    ) -> bool:
        """
        Return whether a ``kind`` notification may be sent on ``session``.

        Uses the same requirement table as inbound authorization. Callers
        must skip sending, not raise, when this returns False.
        """
        kind = NotificationKind(kind)

        if not session.is_ready:
            self._drop(kind, session, "session_not_ready")
            return False

        requirement = METHOD_REQUIREMENTS[NOTIFICATION_METHODS[kind]]
        if not requirement.satisfied_by(session.capabilities_for(requirement.side)):
            self.suppressed[kind.value] += 1
            logger.warning(
                event="notification_suppressed",
                kind=kind.value,
                session_id=session.id,
                capability=requirement.capability,
                option=requirement.option,
                suppressed_total=self.suppressed[kind.value],
            )
            return False

        if kind == NotificationKind.RESOURCE_UPDATED:
            if not uri or not session.subscriptions.has_subscribers(uri):
                self._drop(kind, session, "no_subscribers", uri=uri)
                return False

        if kind == NotificationKind.LOG_MESSAGE and level is not None:
            if LoggingLevel(level).severity < session.log_level.severity:
                self._drop(kind, session, "below_log_level")
                return False

        return True

    def _drop(self, kind: NotificationKind, session: "Session", reason: str, **context) -> None:
        self.dropped[reason] += 1
        logger.debug(
            event="notification_dropped",
            kind=kind.value,
            session_id=session.id,
            reason=reason,
            **context,
        )

    async def subscribe(
        self, session: "Session", uri: str, subscriber: Optional[str] = None
    ) -> bool:
        """
        Record a subscription. The caller has already authorized
        resources/subscribe; the session must be Ready.
        """
        session.require_ready()
        added = await session.subscriptions.add(uri, subscriber or session.id)
        logger.info(event="resource_subscribed", session_id=session.id, uri=uri, new=added)
        return added

    async def unsubscribe(
        self, session: "Session", uri: str, subscriber: Optional[str] = None
    ) -> bool:
        session.require_ready()
        removed = await session.subscriptions.remove(uri, subscriber or session.id)
        logger.info(event="resource_unsubscribed", session_id=session.id, uri=uri, removed=removed)
        return removed
