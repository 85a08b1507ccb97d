"""chatkeeper/memory.py

In-memory conversation cache with a bounded, expiring history per
conversation.

Each conversation keeps at most ``message_limit`` messages. When the bound
is exceeded the oldest non-system messages roll off first; system messages
are never evicted, so a conversation whose system messages alone reach the
limit keeps only those (the count may then exceed the limit by the number of
system messages). Conversations idle for longer than the expiration window
are treated as absent and purged on the next access. A conversation whose
lock is held has a turn in flight and does not expire until it is released.
"""

from __future__ import annotations

# Standard Library
import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from uuid import UUID

# Local Modules
from chatkeeper.exceptions import CacheStateError
from chatkeeper.models import ChatMessage, Role
from chatkeeper.settings import DEFAULT_MESSAGE_EXPIRATION, DEFAULT_MESSAGE_LIMIT

logger = logging.getLogger(__name__)


def trim_history(messages: list[ChatMessage], limit: int) -> list[ChatMessage]:
    """Drop the oldest non-system messages until at most ``limit`` remain.

    Args:
        messages: Conversation history in insertion order.
        limit: Maximum number of messages to keep.

    Returns:
        The trimmed history. ``messages`` itself is returned when it already
        fits, otherwise a new list.
    """
    excess = len(messages) - limit
    if excess <= 0:
        return messages

    trimmed: list[ChatMessage] = []
    for message in messages:
        if excess > 0 and message.role is not Role.SYSTEM:
            excess -= 1
            continue
        trimmed.append(message)
    return trimmed


def check_history_bound(messages: list[ChatMessage], limit: int) -> None:
    """Raise CacheStateError if ``messages`` breaks the retention bound."""
    system_count = sum(1 for message in messages if message.role is Role.SYSTEM)
    allowed = max(limit, system_count)
    if len(messages) > allowed:
        raise CacheStateError(
            f"history holds {len(messages)} messages, at most {allowed} allowed"
        )


@dataclass
class _ConversationEntry:
    messages: list[ChatMessage]
    last_activity: float


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ConversationCache:
    """Per-conversation message store with trimming and sliding expiration.

    The primitives (``get``, ``append``, ``reset``, ``delete``) never suspend,
    so each one is atomic with respect to the event loop. Multi-step
    read-modify-write sequences must run inside ``lock(conversation_id)``,
    which serializes work on one conversation without blocking others.
    """

    def __init__(
        self,
        message_limit: int = DEFAULT_MESSAGE_LIMIT,
        expiration: timedelta = DEFAULT_MESSAGE_EXPIRATION,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize an empty cache.

        Args:
            message_limit: Maximum messages retained per conversation.
            expiration: Idle time after which a conversation is dropped.
            clock: Monotonic time source in seconds.
        """
        if message_limit < 1:
            raise ValueError("message_limit must be at least 1")
        if expiration <= timedelta(0):
            raise ValueError("expiration must be positive")

        self.message_limit = message_limit
        self.expiration = expiration
        self._clock = clock
        # Least recently active first.
        self._entries: OrderedDict[UUID, _ConversationEntry] = OrderedDict()
        self._locks: dict[UUID, _KeyLock] = {}

    def get(self, conversation_id: UUID) -> list[ChatMessage]:
        """Return a copy of the live history, or an empty list.

        Reading counts as activity and pushes the expiration forward.
        """
        now = self._clock()
        self._purge_expired(now)

        entry = self._entries.get(conversation_id)
        if entry is None:
            return []

        self._touch(conversation_id, entry, now)
        return list(entry.messages)

    def append(self, conversation_id: UUID, message: ChatMessage) -> None:
        """Append a message, creating the conversation if needed, then trim."""
        now = self._clock()
        self._purge_expired(now)

        entry = self._entries.get(conversation_id)
        if entry is None:
            entry = _ConversationEntry(messages=[], last_activity=now)
            self._entries[conversation_id] = entry

        entry.messages.append(message)
        self._touch(conversation_id, entry, now)
        self._trim(conversation_id, entry)

    def reset(self, conversation_id: UUID, system_message: ChatMessage) -> None:
        """Replace any existing history with just ``system_message``."""
        now = self._clock()
        self._purge_expired(now)
        self._entries[conversation_id] = _ConversationEntry(
            messages=[system_message], last_activity=now
        )
        self._entries.move_to_end(conversation_id)

    def delete(self, conversation_id: UUID) -> None:
        """Remove the conversation. No-op if it does not exist."""
        self._entries.pop(conversation_id, None)
        self._purge_expired(self._clock())

    def sweep(self) -> int:
        """Purge every expired conversation.

        Returns:
            Number of conversations removed.
        """
        return self._purge_expired(self._clock())

    def __len__(self) -> int:
        self._purge_expired(self._clock())
        return len(self._entries)

    def __contains__(self, conversation_id: object) -> bool:
        self._purge_expired(self._clock())
        return conversation_id in self._entries

    @asynccontextmanager
    async def lock(self, conversation_id: UUID) -> AsyncIterator[None]:
        """Hold the conversation's exclusive lock for the duration of the block.

        The conversation cannot expire while its lock is held or awaited;
        releasing the lock counts as activity.
        """
        holder = self._locks.get(conversation_id)
        if holder is None:
            holder = self._locks[conversation_id] = _KeyLock()

        holder.users += 1
        try:
            async with holder.lock:
                yield
        finally:
            holder.users -= 1
            if holder.users == 0:
                self._locks.pop(conversation_id, None)
            entry = self._entries.get(conversation_id)
            if entry is not None:
                self._touch(conversation_id, entry, self._clock())

    def _touch(self, conversation_id: UUID, entry: _ConversationEntry, now: float) -> None:
        entry.last_activity = now
        self._entries.move_to_end(conversation_id)

    def _trim(self, conversation_id: UUID, entry: _ConversationEntry) -> None:
        before = len(entry.messages)
        try:
            trimmed = trim_history(entry.messages, self.message_limit)
            check_history_bound(trimmed, self.message_limit)
        except CacheStateError:
            logger.error(
                "Conversation %s violated the history bound; resetting it",
                conversation_id,
                exc_info=True,
            )
            entry.messages = [m for m in entry.messages if m.role is Role.SYSTEM]
            raise

        entry.messages = trimmed
        if len(trimmed) != before:
            logger.debug(
                "Trimmed conversation %s from %d to %d messages",
                conversation_id,
                before,
                len(trimmed),
            )

    def _purge_expired(self, now: float) -> int:
        window = self.expiration.total_seconds()
        expired: list[UUID] = []
        for conversation_id, entry in self._entries.items():
            if now - entry.last_activity <= window:
                break
            if conversation_id not in self._locks:
                expired.append(conversation_id)
        for conversation_id in expired:
            del self._entries[conversation_id]

        if expired:
            logger.debug("Purged %d expired conversation(s)", len(expired))
        return len(expired)
