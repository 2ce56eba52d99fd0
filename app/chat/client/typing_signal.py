"""
Outgoing typing signal debounce.

Each conversation has explicit timer state:

    Idle --input--> Typing (send start, arm timer)
    Typing --input--> Typing (re-arm timer, send nothing)
    Typing --timer | clear() | sent()--> Idle (send stop once)

The server applies its own expiry, so a lost stop only shows a stale
indicator until that runs out.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from chat.constants import TYPING_CONFIG

logger = logging.getLogger(__name__)


class TypingSignaler:
    """
    Debounces keystrokes into typing start/stop signals.

    Args:
        send: Coroutine function ``send(conversation_id, is_typing)``,
            usually EventStreamClient.send_typing
        quiet_period: Seconds without input before stop is sent
    """

    def __init__(
        self,
        send: Callable[[str, bool], Awaitable],
        quiet_period: float = TYPING_CONFIG.QUIET_PERIOD_SECONDS,
    ):
        self._send = send
        self.quiet_period = quiet_period
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()

    def is_typing(self, conversation_id) -> bool:
        return str(conversation_id) in self._timers

    def input(self, conversation_id) -> None:
        """Record a keystroke in ``conversation_id``."""
        conversation_id = str(conversation_id)
        loop = asyncio.get_running_loop()

        timer = self._timers.pop(conversation_id, None)
        if timer is None:
            self._emit(conversation_id, True)
        else:
            timer.cancel()

        self._timers[conversation_id] = loop.call_later(
            self.quiet_period, self._expire, conversation_id
        )

    def clear(self, conversation_id) -> None:
        """Input emptied or view closed."""
        self._stop(str(conversation_id))

    def sent(self, conversation_id) -> None:
        """Message submitted."""
        self._stop(str(conversation_id))

    def close(self) -> None:
        """Stop every active conversation (stream shutting down)."""
        for conversation_id in list(self._timers):
            self._stop(conversation_id)

    def _expire(self, conversation_id: str) -> None:
        if self._timers.pop(conversation_id, None) is not None:
            self._emit(conversation_id, False)

    def _stop(self, conversation_id: str) -> None:
        timer = self._timers.pop(conversation_id, None)
        if timer is None:
            return
        timer.cancel()
        self._emit(conversation_id, False)

    def _emit(self, conversation_id: str, is_typing: bool) -> None:
        task = asyncio.get_running_loop().create_task(
            self._deliver(conversation_id, is_typing)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, conversation_id: str, is_typing: bool) -> None:
        try:
            await self._send(conversation_id, is_typing)
        except Exception as e:
            logger.debug(f"Typing signal for {conversation_id} not sent: {e}")
