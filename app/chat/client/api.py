"""
REST client for the chat API.

ChatApi is the contract the synchronizer depends on; HttpChatApi is the
aiohttp implementation against /api/v1/chat/. Tests substitute an
in-memory fake with the same coroutine signatures.

Error Handling:
    Every transport or server failure is raised as ChatApiError, carrying
    the HTTP status (None for network failures) and the server's
    error_code when the body had one.

Usage:
    async with HttpChatApi(base_url, access_token) as api:
        conversations = await api.list_conversations()
        message = await api.create_message("12", "Hello", client_id="tmp-1")
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import aiohttp

from chat.events import ConversationPayload, MessagePayload, ReactionPayload
from core.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


class ChatApiError(ExternalServiceError):
    """
    Raised when a chat API call fails.

    Attributes:
        status: HTTP status, or None when the request never got a response
    """

    default_error_code = "CHAT_API_ERROR"

    def __init__(
        self,
        message: str,
        status: int | None = None,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, error_code=error_code, details=details)
        self.status = status


class ChatApi(Protocol):
    """The REST operations the client core consumes."""

    async def list_conversations(self) -> list[ConversationPayload]: ...

    async def fetch_messages(
        self, conversation_id: str, after_id: str | None = None
    ) -> list[MessagePayload]: ...

    async def create_message(
        self,
        conversation_id: str,
        content: str,
        reply_to_id: str | None = None,
        client_id: str | None = None,
    ) -> MessagePayload: ...

    async def mark_read(self, conversation_id: str) -> list[str]: ...

    async def toggle_reaction(
        self, message_id: str, emoji: str
    ) -> list[ReactionPayload]: ...

    async def edit_message(self, message_id: str, content: str) -> MessagePayload: ...

    async def delete_message(self, message_id: str) -> MessagePayload: ...

    async def delete_conversation(self, conversation_id: str) -> None: ...


class HttpChatApi:
    """
    aiohttp implementation of ChatApi.

    Owns its ClientSession unless one is passed in. Use as an async
    context manager or call close() when done.
    """

    def __init__(
        self,
        base_url: str,
        access_token: str,
        session: aiohttp.ClientSession | None = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/") + "/"
        self.access_token = access_token
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def __aenter__(self) -> HttpChatApi:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _request(
        self, method: str, path: str, json: dict[str, Any] | None = None, params=None
    ) -> Any:
        url = self.base_url + path
        headers = {"Authorization": f"Bearer {self.access_token}"}

        try:
            async with self._get_session().request(
                method, url, json=json, params=params, headers=headers
            ) as response:
                if response.status == 204:
                    return None
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = None

                if response.status >= 400:
                    raise self._error_from_response(method, path, response.status, body)
                return body
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Chat API {method} {path} failed: {e}")
            raise ChatApiError(
                f"Request to {path} failed: {e}",
                error_code="NETWORK_ERROR",
            ) from e

    @staticmethod
    def _error_from_response(method, path, status, body) -> ChatApiError:
        if isinstance(body, dict) and "error" in body:
            message = str(body["error"])
            error_code = body.get("error_code")
            details = {"status": status}
        else:
            # DRF serializer errors are a field -> messages mapping
            message = f"{method} {path} returned {status}"
            error_code = None
            details = {"status": status, "body": body}

        logger.warning(f"Chat API {method} {path} returned {status}: {message}")
        return ChatApiError(message, status=status, error_code=error_code, details=details)

    async def list_conversations(self) -> list[ConversationPayload]:
        body = await self._request("GET", "conversations/")
        return [ConversationPayload.from_dict(item) for item in body]

    async def fetch_messages(
        self, conversation_id: str, after_id: str | None = None
    ) -> list[MessagePayload]:
        params = {"after": after_id} if after_id else None
        body = await self._request(
            "GET", f"conversations/{conversation_id}/messages/", params=params
        )
        return [MessagePayload.from_dict(item) for item in body]

    async def create_message(
        self,
        conversation_id: str,
        content: str,
        reply_to_id: str | None = None,
        client_id: str | None = None,
    ) -> MessagePayload:
        payload: dict[str, Any] = {"content": content}
        if reply_to_id:
            payload["reply_to_id"] = reply_to_id
        if client_id:
            payload["client_id"] = client_id

        body = await self._request(
            "POST", f"conversations/{conversation_id}/messages/", json=payload
        )
        return MessagePayload.from_dict(body)

    async def mark_read(self, conversation_id: str) -> list[str]:
        body = await self._request("POST", f"conversations/{conversation_id}/read/")
        return [str(message_id) for message_id in body.get("message_ids", [])]

    async def toggle_reaction(self, message_id: str, emoji: str) -> list[ReactionPayload]:
        body = await self._request(
            "POST", f"messages/{message_id}/reactions/toggle/", json={"emoji": emoji}
        )
        return [ReactionPayload.from_dict(item) for item in body["reactions"]]

    async def edit_message(self, message_id: str, content: str) -> MessagePayload:
        body = await self._request(
            "PATCH", f"messages/{message_id}/", json={"content": content}
        )
        return MessagePayload.from_dict(body)

    async def delete_message(self, message_id: str) -> MessagePayload:
        body = await self._request("DELETE", f"messages/{message_id}/")
        return MessagePayload.from_dict(body)

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._request("DELETE", f"conversations/{conversation_id}/")
