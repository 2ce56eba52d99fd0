"""
Tests for HttpChatApi against a stub aiohttp server.

Covers request shapes, payload parsing and the mapping of failures to
ChatApiError.
"""

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from chat.client.api import ChatApiError, HttpChatApi

MESSAGE = {
    "id": "41",
    "conversation_id": "7",
    "sender_id": "3",
    "sender_name": "Ann",
    "content": "Hello",
    "created_at": "2026-03-01T10:00:00+00:00",
    "client_id": "temp-1",
    "reactions": [],
    "read_by": [],
}


@pytest.fixture
def requests_seen():
    return []


@pytest_asyncio.fixture
async def server(requests_seen):
    async def conversations(request):
        requests_seen.append((request.method, request.path, dict(request.headers)))
        return web.json_response(
            [{"id": "7", "kind": "group", "name": "Choir", "updated_at": "t", "unread_count": 2}]
        )

    async def messages(request):
        body = await request.json() if request.method == "POST" else None
        requests_seen.append((request.method, request.path_qs, body))
        if request.method == "POST":
            if not body["content"].strip():
                return web.json_response(
                    {"error": "Message content cannot be empty", "error_code": "EMPTY_CONTENT"},
                    status=400,
                )
            return web.json_response(MESSAGE, status=201)
        return web.json_response([MESSAGE])

    async def read(request):
        return web.json_response({"status": "read", "message_ids": ["41"]})

    async def broken(request):
        return web.json_response({"content": ["This field is required."]}, status=400)

    async def delete_conversation(request):
        return web.Response(status=204)

    app = web.Application()
    app.router.add_get("/api/v1/chat/conversations/", conversations)
    app.router.add_route("*", "/api/v1/chat/conversations/7/messages/", messages)
    app.router.add_post("/api/v1/chat/conversations/7/read/", read)
    app.router.add_patch("/api/v1/chat/messages/41/", broken)
    app.router.add_delete("/api/v1/chat/conversations/7/", delete_conversation)

    test_server = test_utils.TestServer(app)
    await test_server.start_server()
    yield test_server
    await test_server.close()


@pytest_asyncio.fixture
async def api(server):
    client = HttpChatApi(str(server.make_url("/api/v1/chat")), "secret")
    yield client
    await client.close()


@pytest.mark.asyncio
class TestHttpChatApi:
    async def test_list_conversations(self, api, requests_seen):
        conversations = await api.list_conversations()

        assert conversations[0].id == "7"
        assert conversations[0].unread_count == 2
        assert requests_seen[0][2]["Authorization"] == "Bearer secret"

    async def test_fetch_messages_with_cursor(self, api, requests_seen):
        messages = await api.fetch_messages("7", after_id="40")

        assert messages[0].id == "41"
        assert requests_seen[0][1] == "/api/v1/chat/conversations/7/messages/?after=40"

    async def test_create_message_sends_client_id(self, api, requests_seen):
        message = await api.create_message("7", "Hello", client_id="temp-1")

        assert message.client_id == "temp-1"
        assert requests_seen[0][2] == {"content": "Hello", "client_id": "temp-1"}

    async def test_service_error_mapped(self, api):
        """
        The server's {"error", "error_code"} body becomes ChatApiError.

        Why it matters: The synchronizer shows error_code-specific notices
        after a rollback.
        """
        with pytest.raises(ChatApiError) as exc_info:
            await api.create_message("7", " ")

        assert exc_info.value.status == 400
        assert exc_info.value.error_code == "EMPTY_CONTENT"
        assert exc_info.value.message == "Message content cannot be empty"

    async def test_serializer_error_keeps_body(self, api):
        with pytest.raises(ChatApiError) as exc_info:
            await api.edit_message("41", "")

        assert exc_info.value.error_code == "CHAT_API_ERROR"
        assert exc_info.value.details["body"] == {"content": ["This field is required."]}

    async def test_mark_read(self, api):
        assert await api.mark_read("7") == ["41"]

    async def test_no_content_response(self, api):
        assert await api.delete_conversation("7") is None

    async def test_network_failure(self):
        api = HttpChatApi("http://127.0.0.1:1/api/v1/chat/", "secret", timeout=2)
        try:
            with pytest.raises(ChatApiError) as exc_info:
                await api.list_conversations()
        finally:
            await api.close()

        assert exc_info.value.error_code == "NETWORK_ERROR"
        assert exc_info.value.status is None
