"""
Push channel reader.

Keeps one websocket open to ws/events/, decodes every frame into an event
dataclass and hands it to a handler (normally
ClientSynchronizer.handle_event). Heartbeats are acknowledged here.

Reconnect Policy:
    Exponential backoff, min(1s * 2^n, 30s), reset after a connection
    reaches its "connected" frame. After every reconnect on_reconnect runs
    (normally ClientSynchronizer.resync), since the server keeps no replay
    buffer. Authentication failures stop the loop with ChatApiError.

Usage:
    stream = EventStreamClient(
        "wss://portal.example.org/ws/events/",
        access_token,
        on_event=sync.handle_event,
        on_reconnect=sync.resync,
    )
    task = asyncio.create_task(stream.run())
    ...
    await stream.stop()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

import aiohttp

from chat.client.api import ChatApiError
from chat.events import Connected, Event, EventDecodeError, Heartbeat, decode_event

logger = logging.getLogger(__name__)

AUTH_FAILURE_STATUSES = (401, 403)
UNAUTHENTICATED_CLOSE_CODE = 4001


class EventStreamClient:
    """
    Reconnecting reader for the push channel.

    Args:
        url: Websocket URL of ws/events/
        access_token: JWT access token, sent as the "jwt, <token>" subprotocol
        on_event: Called with every decoded event (may be a coroutine function)
        on_reconnect: Awaited after each successful reconnect
        session: Optional shared aiohttp session
    """

    def __init__(
        self,
        url: str,
        access_token: str,
        on_event: Callable[[Event], Any],
        on_reconnect: Callable[[], Awaitable] | None = None,
        session: aiohttp.ClientSession | None = None,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ):
        self.url = url
        self.access_token = access_token
        self.on_event = on_event
        self.on_reconnect = on_reconnect
        self.base_delay = base_delay
        self.max_delay = max_delay

        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._stop_event = asyncio.Event()
        self._attempt = 0
        self._has_connected = False
        self.reconnects = 0

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt ``attempt`` (0-based)."""
        return min(self.base_delay * (2**attempt), self.max_delay)

    async def run(self) -> None:
        """
        Read until stop() is called.

        Raises:
            ChatApiError: If the server rejects the token
        """
        self._stop_event.clear()
        try:
            while not self._stop_event.is_set():
                try:
                    await self._connect_and_read()
                except aiohttp.WSServerHandshakeError as e:
                    if e.status in AUTH_FAILURE_STATUSES:
                        raise ChatApiError(
                            "Push channel rejected the access token",
                            status=e.status,
                            error_code="UNAUTHENTICATED",
                        ) from e
                    logger.warning(f"Push channel handshake failed: {e}")
                except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                    logger.warning(f"Push channel connection lost: {e}")

                if self._stop_event.is_set():
                    break

                delay = self.backoff_delay(self._attempt)
                self._attempt += 1
                logger.info(f"Reconnecting push channel in {delay:.1f}s")
                await self._wait(delay)
        finally:
            await self._close_session()

    async def stop(self) -> None:
        """Close the socket and end run()."""
        self._stop_event.set()
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()

    async def send_typing(self, conversation_id, is_typing: bool) -> bool:
        return await self._send(
            {
                "type": "typing",
                "conversation_id": str(conversation_id),
                "is_typing": is_typing,
            }
        )

    async def send_read(self, conversation_id) -> bool:
        return await self._send({"type": "read", "conversation_id": str(conversation_id)})

    async def _send(self, payload: dict) -> bool:
        if not self.is_open:
            return False
        try:
            await self._ws.send_json(payload)
        except (aiohttp.ClientError, ConnectionResetError) as e:
            logger.debug(f"Push channel send failed: {e}")
            return False
        return True

    async def _connect_and_read(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()

        async with self._session.ws_connect(
            self.url, protocols=("jwt", self.access_token)
        ) as ws:
            self._ws = ws
            try:
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        await self._handle_frame(msg.data)
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        logger.warning(f"Push channel error: {ws.exception()}")
                        break
            finally:
                self._ws = None

        if ws.close_code == UNAUTHENTICATED_CLOSE_CODE:
            raise ChatApiError(
                "Push channel rejected the access token",
                status=401,
                error_code="UNAUTHENTICATED",
            )
        logger.info(f"Push channel closed (code {ws.close_code})")

    async def _handle_frame(self, data: str) -> None:
        try:
            event = decode_event(data)
        except EventDecodeError as e:
            logger.warning(f"Skipping push frame: {e}")
            return

        if isinstance(event, Heartbeat):
            await self._send({"type": "heartbeat_ack"})
        elif isinstance(event, Connected):
            await self._on_connected()

        try:
            result = self.on_event(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.exception(f"Push event handler failed for {event.TYPE}: {e}")

    async def _on_connected(self) -> None:
        self._attempt = 0
        if not self._has_connected:
            self._has_connected = True
            return

        self.reconnects += 1
        if self.on_reconnect is None:
            return
        try:
            await self.on_reconnect()
        except Exception as e:
            logger.exception(f"Resync after reconnect failed: {e}")

    async def _wait(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _close_session(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
