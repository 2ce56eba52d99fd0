"""
Tests for EventStreamClient.

Frame handling is tested directly; connection behaviour (heartbeat ack,
reconnect with resync, 4001 rejection) against a small aiohttp websocket
server.
"""

import asyncio
import json

import pytest
from aiohttp import web
from aiohttp import test_utils

from chat.client.api import ChatApiError
from chat.client.stream import EventStreamClient
from chat.events import Connected, Heartbeat, TypingStop, encode_event

CONNECTED = encode_event(Connected(user_id="u1", heartbeat_interval=30.0))


async def _serve(handler):
    app = web.Application()
    app.router.add_get("/ws/events/", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    return server


class TestBackoff:
    def test_doubles_up_to_cap(self):
        """
        Reconnect delays grow 1, 2, 4 ... seconds and stop at 30.

        Why it matters: A server restart must not be hammered by every
        client at once.
        """
        client = EventStreamClient("ws://localhost/ws/events/", "token", lambda e: None)

        delays = [client.backoff_delay(attempt) for attempt in range(7)]

        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


@pytest.mark.asyncio
class TestHandleFrame:
    async def test_decoded_event_passed_to_handler(self):
        events = []
        client = EventStreamClient("ws://localhost/", "token", events.append)

        await client._handle_frame(
            encode_event(TypingStop(conversation_id="c1", user_id="u2"))
        )

        assert events == [TypingStop(conversation_id="c1", user_id="u2")]

    async def test_coroutine_handler_awaited(self):
        events = []

        async def on_event(event):
            events.append(event)

        client = EventStreamClient("ws://localhost/", "token", on_event)

        await client._handle_frame(CONNECTED)

        assert len(events) == 1

    async def test_bad_frame_skipped(self):
        events = []
        client = EventStreamClient("ws://localhost/", "token", events.append)

        await client._handle_frame('{"type": "mystery", "data": {}}')
        await client._handle_frame("not json")

        assert events == []

    async def test_handler_error_does_not_propagate(self):
        def on_event(event):
            raise RuntimeError("ui crashed")

        client = EventStreamClient("ws://localhost/", "token", on_event)

        await client._handle_frame(CONNECTED)

    async def test_send_without_socket_returns_false(self):
        client = EventStreamClient("ws://localhost/", "token", lambda e: None)

        assert await client.send_typing("c1", True) is False
        assert await client.send_read("c1") is False


@pytest.mark.asyncio
class TestConnection:
    async def test_heartbeat_acknowledged_and_4001_stops(self):
        """
        A heartbeat is answered with heartbeat_ack; close code 4001 ends
        run() with ChatApiError instead of reconnecting.

        Why it matters: An expired token must surface as "log in again",
        not an endless reconnect loop.
        """
        frames_from_client = []
        offered_protocols = []

        async def handler(request):
            offered_protocols.append(request.headers.get("Sec-WebSocket-Protocol"))
            ws = web.WebSocketResponse(protocols=("jwt",))
            await ws.prepare(request)
            await ws.send_str(CONNECTED)
            await ws.send_str(encode_event(Heartbeat(timestamp=1.0)))
            message = await ws.receive()
            frames_from_client.append(json.loads(message.data))
            await ws.close(code=4001)
            return ws

        server = await _serve(handler)
        events = []
        client = EventStreamClient(
            str(server.make_url("/ws/events/")), "secret", events.append, base_delay=0.01
        )
        try:
            with pytest.raises(ChatApiError) as exc_info:
                await asyncio.wait_for(client.run(), timeout=5)
        finally:
            await server.close()

        assert exc_info.value.error_code == "UNAUTHENTICATED"
        assert frames_from_client == [{"type": "heartbeat_ack"}]
        assert [type(event) for event in events] == [Connected, Heartbeat]
        assert [p.strip() for p in offered_protocols[0].split(",")] == ["jwt", "secret"]

    async def test_reconnect_runs_resync(self):
        connections = 0

        async def handler(request):
            nonlocal connections
            connections += 1
            ws = web.WebSocketResponse(protocols=("jwt",))
            await ws.prepare(request)
            await ws.send_str(CONNECTED)
            if connections == 1:
                await ws.close()
            else:
                async for _ in ws:
                    pass
            return ws

        server = await _serve(handler)
        resynced = asyncio.Event()

        async def on_reconnect():
            resynced.set()

        client = EventStreamClient(
            str(server.make_url("/ws/events/")),
            "secret",
            lambda event: None,
            on_reconnect=on_reconnect,
            base_delay=0.01,
        )
        task = asyncio.create_task(client.run())
        try:
            await asyncio.wait_for(resynced.wait(), timeout=5)
            assert client.reconnects == 1
            assert client.is_open
        finally:
            await client.stop()
            await asyncio.wait_for(task, timeout=5)
            await server.close()
