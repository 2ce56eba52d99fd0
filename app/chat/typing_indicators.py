"""
Typing indicator coordination.

Ephemeral, in-memory state: for each conversation, the users currently
typing, each with an expiry deadline and the audience the indicator was
announced to. Nothing here is persisted; a restart (or reconnect) starts
from empty.

State machine per (conversation, user):

    Idle --start--> Typing      publishes typingStart
    Typing --start--> Typing    deadline reset, nothing published
    Typing --stop--> Idle       publishes typingStop
    Typing --expire--> Idle     publishes typingStop (quiet period elapsed)
    Idle --stop--> Idle         no-op (late or duplicate stop)

The coordinator hooks into the hub: every maintenance tick runs expire(),
and a user going offline clears all of their entries.

Usage:
    from chat.realtime import get_typing

    get_typing().start(conversation.id, user.id, targets=participant_ids)
    get_typing().stop(conversation.id, user.id)
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from chat.constants import TYPING_CONFIG
from chat.events import TypingStart, TypingStop

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from chat.hub import EventHub

logger = logging.getLogger(__name__)


@dataclass
class TypingEntry:
    deadline: float
    targets: frozenset[str]
    user_name: str = ""


class TypingCoordinator:
    """
    Per-conversation typing sets with auto-expiry.

    Args:
        hub: Hub used to publish typingStart/typingStop
        quiet_period: Seconds of silence before an entry expires
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        hub: EventHub,
        quiet_period: float = TYPING_CONFIG.QUIET_PERIOD_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.hub = hub
        self.quiet_period = quiet_period
        self.clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, dict[str, TypingEntry]] = {}

        hub.add_tick_listener(self.expire)
        hub.add_offline_listener(self.clear_user)

    def start(
        self,
        conversation_id,
        user_id,
        targets: Iterable,
        user_name: str = "",
    ) -> bool:
        """
        Mark ``user_id`` typing in ``conversation_id``.

        Returns True on the Idle -> Typing transition (typingStart sent to
        targets other than the typist), False when the user was already
        typing and only the deadline moved.
        """
        conversation_id, user_id = str(conversation_id), str(user_id)
        audience = frozenset(str(target) for target in targets) - {user_id}
        deadline = self.clock() + self.quiet_period

        with self._lock:
            typists = self._entries.setdefault(conversation_id, {})
            entry = typists.get(user_id)
            if entry is not None:
                entry.deadline = deadline
                entry.targets = audience
                return False
            typists[user_id] = TypingEntry(deadline, audience, user_name)

        logger.debug(f"User {user_id} started typing in {conversation_id}")
        self.hub.publish(
            TypingStart(
                conversation_id=conversation_id,
                user_id=user_id,
                user_name=user_name,
            ),
            audience,
        )
        return True

    def stop(self, conversation_id, user_id) -> bool:
        """
        Return ``user_id`` to Idle in ``conversation_id``.

        A stop for a user who is not typing is a no-op and returns False.
        """
        conversation_id, user_id = str(conversation_id), str(user_id)
        with self._lock:
            entry = self._pop(conversation_id, user_id)
        if entry is None:
            return False

        logger.debug(f"User {user_id} stopped typing in {conversation_id}")
        self._publish_stop(conversation_id, user_id, entry)
        return True

    def expire(self, now: float | None = None) -> int:
        """Clear entries whose deadline has passed. Returns how many expired."""
        now = self.clock() if now is None else now
        expired: list[tuple[str, str, TypingEntry]] = []
        with self._lock:
            for conversation_id, typists in list(self._entries.items()):
                for user_id, entry in list(typists.items()):
                    if entry.deadline <= now:
                        expired.append((conversation_id, user_id, entry))
                        self._pop(conversation_id, user_id)

        for conversation_id, user_id, entry in expired:
            logger.debug(f"Typing expired for user {user_id} in {conversation_id}")
            self._publish_stop(conversation_id, user_id, entry)
        return len(expired)

    def clear_user(self, user_id) -> int:
        """Stop every entry of ``user_id`` (used when the user goes offline)."""
        user_id = str(user_id)
        cleared: list[tuple[str, TypingEntry]] = []
        with self._lock:
            for conversation_id in list(self._entries):
                entry = self._pop(conversation_id, user_id)
                if entry is not None:
                    cleared.append((conversation_id, entry))

        for conversation_id, entry in cleared:
            self._publish_stop(conversation_id, user_id, entry)
        return len(cleared)

    def typing_user_ids(self, conversation_id) -> list[str]:
        with self._lock:
            return sorted(self._entries.get(str(conversation_id), {}))

    def is_typing(self, conversation_id, user_id) -> bool:
        with self._lock:
            return str(user_id) in self._entries.get(str(conversation_id), {})

    def reset(self) -> None:
        """Forget every entry without publishing."""
        with self._lock:
            self._entries.clear()

    def _pop(self, conversation_id: str, user_id: str) -> TypingEntry | None:
        # Caller holds the lock
        typists = self._entries.get(conversation_id)
        if not typists:
            return None
        entry = typists.pop(user_id, None)
        if not typists:
            del self._entries[conversation_id]
        return entry

    def _publish_stop(
        self, conversation_id: str, user_id: str, entry: TypingEntry
    ) -> None:
        self.hub.publish(
            TypingStop(conversation_id=conversation_id, user_id=user_id),
            entry.targets,
        )
