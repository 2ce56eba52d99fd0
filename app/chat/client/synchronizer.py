"""
Client-side state synchronizer.

Presents one viewer with a deduplicated, ordered message list per
conversation and a recency-ordered conversation list, merging three
inputs: the initial fetch when a conversation opens, optimistic local
sends, and events from the push stream.

Send Protocol (two-phase):
    1. begin_send() appends a pending placeholder synchronously. Its
       temporary id is never reused and doubles as the client_id.
    2. send() issues create_message.
    3. Success: the placeholder is replaced by the server message.
       Failure: the placeholder is removed, the draft is restored and a
       SyncNotice is recorded. The push echo of a pending send (matched
       by client_id) confirms the placeholder early; it never duplicates.

Receive Protocol:
    newMessage          -> append if the id is new, bump the conversation
    messageUpdated      -> replace by id in place
    conversation*       -> upsert to the top of the list
    conversationDeleted -> drop locally
    typing*             -> received typing indicators

Read Acknowledgment:
    open_conversation() and set_visible(True) zero the unread count at once
    and schedule a debounced mark_read. close_conversation() cancels the
    debounce but never an in-flight send.

Ordering:
    Confirmed messages keep arrival order; pending placeholders always
    render after them until they resolve.

Usage:
    sync = ClientSynchronizer(api, viewer_id="12", notifier=dispatcher)
    await sync.resync()
    await sync.open_conversation("34")
    placeholder = sync.begin_send("34", "Hello")
    await sync.send(placeholder)
"""

from __future__ import annotations

import asyncio
import collections
import dataclasses
import logging
import uuid
from datetime import datetime, timezone

from chat.client.api import ChatApi, ChatApiError
from chat.client.notifier import NotificationDispatcher
from chat.client.typing_signal import TypingSignaler
from chat.events import (
    Connected,
    ConnectedUsers,
    ConversationCreated,
    ConversationDeleted,
    ConversationPayload,
    ConversationUpdated,
    Event,
    Heartbeat,
    MessagePayload,
    MessageUpdated,
    NewBroadcastChannel,
    NewBroadcastMessage,
    NewMessage,
    TypingStart,
    TypingStop,
)
from core.exceptions import ValidationError

logger = logging.getLogger(__name__)

READ_DEBOUNCE_SECONDS = 0.5
SEEN_IDS_PER_CONVERSATION = 256


@dataclasses.dataclass(frozen=True)
class SyncNotice:
    """A recoverable problem the UI may show (e.g. a failed send)."""

    kind: str
    conversation_id: str
    message: str
    error_code: str | None = None
    draft: str = ""
    temp_id: str = ""


class Timeline:
    """
    Messages of one conversation.

    ``by_id`` gives constant-time lookup and replacement; the two order
    lists hold ids only, so replacing a message never re-sorts. Every
    confirmed id also records the arrival sequence it was added at, which
    lets a full fetch keep what arrived while it was in flight.
    """

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        self.by_id: dict[str, MessagePayload] = {}
        self._confirmed: list[str] = []
        self._pending: list[str] = []
        self._arrivals: dict[str, int] = {}
        self._sequence = 0

    def __len__(self) -> int:
        return len(self._confirmed) + len(self._pending)

    def __contains__(self, message_id) -> bool:
        return message_id in self.by_id

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def messages(self) -> list[MessagePayload]:
        """Confirmed messages in arrival order, then pending ones."""
        return [self.by_id[message_id] for message_id in self._confirmed + self._pending]

    def checkpoint(self) -> int:
        """Arrival sequence to pass to load() for a fetch started now."""
        return self._sequence

    def append_pending(self, placeholder: MessagePayload) -> None:
        self.by_id[placeholder.id] = placeholder
        self._pending.append(placeholder.id)

    def confirm(self, temp_id: str, message: MessagePayload) -> bool:
        """
        Swap the placeholder ``temp_id`` for the server ``message``.

        Safe to call twice (echo first, response second): the second call
        only refreshes the confirmed copy.

        Returns:
            True if a pending placeholder was resolved
        """
        resolved = self.discard(temp_id)
        if message.id in self.by_id:
            self.by_id[message.id] = message
        else:
            self._append_confirmed(message)
        return resolved

    def discard(self, temp_id: str) -> bool:
        if temp_id not in self._pending:
            return False
        self._pending.remove(temp_id)
        del self.by_id[temp_id]
        return True

    def merge(self, message: MessagePayload) -> bool:
        """Append ``message`` unless its id is already present."""
        if message.id in self.by_id:
            return False
        self._append_confirmed(message)
        return True

    def replace(self, message: MessagePayload) -> bool:
        """Replace a confirmed message in place; unknown ids are ignored."""
        current = self.by_id.get(message.id)
        if current is None or current.is_pending:
            return False
        self.by_id[message.id] = message
        return True

    def load(self, messages: list[MessagePayload], since: int | None = None) -> list[str]:
        """
        Merge a full fetch into the timeline, keeping pending sends.

        The fetch becomes the confirmed history. Confirmed messages that
        arrived after checkpoint ``since`` (pushed or confirmed while the
        fetch was in flight) and are missing from it stay, after the
        fetched ones. With ``since=None`` nothing outside the fetch is kept.

        Returns:
            Temporary ids resolved because the fetch already contains them
        """
        pending = {self.by_id[temp_id].client_id: temp_id for temp_id in self._pending}
        previous_by_id = self.by_id
        late_ids = [
            message_id
            for message_id in self._confirmed
            if since is not None and self._arrivals.get(message_id, 0) > since
        ]
        resolved = []

        self.by_id = {temp_id: previous_by_id[temp_id] for temp_id in self._pending}
        self._confirmed = []
        self._arrivals = {}
        for message in messages:
            if message.id in self.by_id:
                continue
            self._append_confirmed(message)
            temp_id = pending.get(message.client_id) if message.client_id else None
            if temp_id is not None:
                self.discard(temp_id)
                resolved.append(temp_id)

        for message_id in late_ids:
            if message_id not in self.by_id:
                self._append_confirmed(previous_by_id[message_id])

        return resolved

    def last_confirmed(self) -> MessagePayload | None:
        if not self._confirmed:
            return None
        return self.by_id[self._confirmed[-1]]

    def _append_confirmed(self, message: MessagePayload) -> None:
        self._sequence += 1
        self.by_id[message.id] = message
        self._confirmed.append(message.id)
        self._arrivals[message.id] = self._sequence


class ClientSynchronizer:
    """
    Local state for one signed-in viewer.

    Owns the conversation list, per-conversation timelines, the pending
    send set, compose drafts, received typing indicators and the
    active-conversation/visibility state. Not shared between sessions.
    """

    def __init__(
        self,
        api: ChatApi,
        viewer_id,
        viewer_name: str = "",
        notifier: NotificationDispatcher | None = None,
        typing_signaler: TypingSignaler | None = None,
        read_debounce: float = READ_DEBOUNCE_SECONDS,
    ):
        self.api = api
        self.viewer_id = str(viewer_id)
        self.viewer_name = viewer_name
        self.notifier = notifier
        self.typing_signaler = typing_signaler
        self.read_debounce = read_debounce

        self.timelines: dict[str, Timeline] = {}
        self.drafts: dict[str, str] = {}
        self.typing: dict[str, dict[str, str]] = {}
        self.notices: list[SyncNotice] = []
        self.online_user_ids: set[str] = set()
        self.connected = False

        self.active_conversation_id: str | None = None
        self.visible = True

        self._conversations: dict[str, ConversationPayload] = {}
        self._order: list[str] = []
        self._unread: dict[str, int] = {}
        self._pending: dict[str, MessagePayload] = {}
        self._read_task: asyncio.Task | None = None
        self._seen: dict[str, collections.deque] = {}

    # =========================================================================
    # Views
    # =========================================================================

    @property
    def conversations(self) -> list[ConversationPayload]:
        """Conversations, most recent first, with local unread counts."""
        return [
            dataclasses.replace(
                self._conversations[conversation_id],
                unread_count=self._unread.get(conversation_id, 0),
            )
            for conversation_id in self._order
        ]

    def get_conversation(self, conversation_id) -> ConversationPayload | None:
        return self._conversations.get(str(conversation_id))

    def unread_count(self, conversation_id) -> int:
        return self._unread.get(str(conversation_id), 0)

    def messages(self, conversation_id) -> list[MessagePayload]:
        timeline = self.timelines.get(str(conversation_id))
        return timeline.messages() if timeline else []

    @property
    def pending_ids(self) -> set[str]:
        return set(self._pending)

    def typing_names(self, conversation_id) -> list[str]:
        return list(self.typing.get(str(conversation_id), {}).values())

    def pop_notices(self) -> list[SyncNotice]:
        notices, self.notices = self.notices, []
        return notices

    # =========================================================================
    # Drafts
    # =========================================================================

    def draft(self, conversation_id) -> str:
        return self.drafts.get(str(conversation_id), "")

    def set_draft(self, conversation_id, text: str) -> None:
        """Store compose input and drive the outgoing typing signal."""
        conversation_id = str(conversation_id)
        self.drafts[conversation_id] = text
        if self.typing_signaler is None:
            return
        if text:
            self.typing_signaler.input(conversation_id)
        else:
            self.typing_signaler.clear(conversation_id)

    # =========================================================================
    # Send
    # =========================================================================

    def begin_send(
        self, conversation_id, content: str, reply_to_id: str | None = None
    ) -> MessagePayload:
        """
        Append a pending placeholder and clear the draft.

        Raises:
            ValidationError: If ``content`` is blank
        """
        conversation_id = str(conversation_id)
        if not content.strip():
            raise ValidationError(
                "Message content cannot be empty", error_code="EMPTY_CONTENT"
            )

        temp_id = f"temp-{uuid.uuid4().hex}"
        placeholder = MessagePayload(
            id=temp_id,
            conversation_id=conversation_id,
            sender_id=self.viewer_id,
            content=content,
            created_at=datetime.now(timezone.utc).isoformat(),
            sender_name=self.viewer_name,
            reply_to_id=reply_to_id,
            client_id=temp_id,
            is_pending=True,
        )

        self._timeline(conversation_id).append_pending(placeholder)
        self._pending[temp_id] = placeholder
        self.drafts[conversation_id] = ""
        if self.typing_signaler is not None:
            self.typing_signaler.sent(conversation_id)

        return placeholder

    async def send(self, placeholder: MessagePayload) -> MessagePayload | None:
        """
        Complete a send started with begin_send().

        Returns:
            The confirmed message, or None after a rollback
        """
        try:
            message = await self.api.create_message(
                placeholder.conversation_id,
                placeholder.content,
                reply_to_id=placeholder.reply_to_id,
                client_id=placeholder.client_id,
            )
        except asyncio.CancelledError:
            self._rollback(placeholder, "Send cancelled", None)
            raise
        except ChatApiError as e:
            self._rollback(placeholder, e.message, e.error_code)
            return None
        except Exception as e:
            logger.exception(f"Unexpected error sending message: {e}")
            self._rollback(placeholder, "Message could not be sent", None)
            return None

        self._confirm(placeholder.id, message)
        return message

    async def send_message(
        self, conversation_id, content: str, reply_to_id: str | None = None
    ) -> MessagePayload | None:
        placeholder = self.begin_send(conversation_id, content, reply_to_id)
        return await self.send(placeholder)

    def _confirm(self, temp_id: str, message: MessagePayload) -> None:
        self._pending.pop(temp_id, None)
        self._timeline(message.conversation_id).confirm(temp_id, message)
        self._remember(message.conversation_id, message.id)
        self._set_last_message(message)

    def _rollback(
        self, placeholder: MessagePayload, reason: str, error_code: str | None
    ) -> None:
        if self._pending.pop(placeholder.id, None) is None:
            # Already confirmed by the push echo; the server has the message
            logger.info(
                f"Send {placeholder.id} failed after its echo arrived: {reason}"
            )
            return

        conversation_id = placeholder.conversation_id
        timeline = self.timelines.get(conversation_id)
        if timeline is not None:
            timeline.discard(placeholder.id)

        # Never overwrite something typed since; the notice keeps the text
        if not self.drafts.get(conversation_id):
            self.drafts[conversation_id] = placeholder.content

        self.notices.append(
            SyncNotice(
                kind="send_failed",
                conversation_id=conversation_id,
                message=reason,
                error_code=error_code,
                draft=placeholder.content,
                temp_id=placeholder.id,
            )
        )
        logger.warning(
            f"Send to conversation {conversation_id} rolled back: {reason}"
        )

    # =========================================================================
    # Open / close / visibility
    # =========================================================================

    async def open_conversation(self, conversation_id) -> None:
        """
        Make ``conversation_id`` the active conversation and load it.

        The unread count is zeroed before the first await.
        """
        conversation_id = str(conversation_id)
        if self.active_conversation_id != conversation_id:
            self._cancel_read()
        self.active_conversation_id = conversation_id
        if self.notifier is not None:
            self.notifier.set_active_conversation(conversation_id)

        self._timeline(conversation_id)
        if self.visible:
            self._acknowledge(conversation_id)

        await self._load_timeline(conversation_id)

    def close_conversation(self) -> None:
        """Leave the active conversation; in-flight sends are unaffected."""
        self._cancel_read()
        if self.active_conversation_id and self.typing_signaler is not None:
            self.typing_signaler.clear(self.active_conversation_id)
        self.active_conversation_id = None
        if self.notifier is not None:
            self.notifier.set_active_conversation(None)

    def set_visible(self, visible: bool) -> None:
        """Window/view gained or lost focus."""
        self.visible = bool(visible)
        if self.notifier is not None:
            self.notifier.set_focus(self.visible)
        if not self.visible:
            self._cancel_read()
        elif self.active_conversation_id is not None:
            self._acknowledge(self.active_conversation_id)

    def _acknowledge(self, conversation_id: str) -> None:
        self._unread[conversation_id] = 0
        self._schedule_read(conversation_id)

    def _schedule_read(self, conversation_id: str) -> None:
        self._cancel_read()
        self._read_task = asyncio.get_running_loop().create_task(
            self._mark_read_later(conversation_id)
        )

    def _cancel_read(self) -> None:
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()
        self._read_task = None

    async def _mark_read_later(self, conversation_id: str) -> None:
        await asyncio.sleep(self.read_debounce)
        try:
            await self.api.mark_read(conversation_id)
        except ChatApiError as e:
            # Safe to drop; the next open or visibility change retries
            logger.warning(f"mark_read for conversation {conversation_id} failed: {e}")
        except Exception as e:
            logger.exception(
                f"Unexpected error marking conversation {conversation_id} read: {e}"
            )

    # =========================================================================
    # Resync
    # =========================================================================

    async def resync(self) -> bool:
        """
        Refetch the conversation list and the active timeline.

        Used at start-up and after every push channel reconnect; events
        missed while disconnected are only recovered this way.
        """
        try:
            conversations = await self.api.list_conversations()
        except ChatApiError as e:
            logger.warning(f"Conversation list refresh failed: {e}")
            return False

        self._conversations = {}
        self._order = []
        self._unread = {}
        for conversation in conversations:
            self._conversations[conversation.id] = conversation
            self._order.append(conversation.id)
            self._unread[conversation.id] = conversation.unread_count or 0

        active = self.active_conversation_id
        self.timelines = {
            conversation_id: timeline
            for conversation_id, timeline in self.timelines.items()
            if conversation_id == active or timeline.pending_ids
        }
        self.typing = {}

        if active is not None:
            if self.visible:
                self._acknowledge(active)
            await self._load_timeline(active)

        return True

    async def _load_timeline(self, conversation_id: str) -> None:
        timeline = self._timeline(conversation_id)
        since = timeline.checkpoint()
        try:
            messages = await self.api.fetch_messages(conversation_id)
        except ChatApiError as e:
            logger.warning(f"Message fetch for conversation {conversation_id} failed: {e}")
            return

        if self.timelines.get(conversation_id) is not timeline:
            # Deleted (or dropped by a resync) while the fetch was in flight
            logger.info(f"Discarding stale fetch for conversation {conversation_id}")
            return

        for temp_id in timeline.load(messages, since=since):
            self._pending.pop(temp_id, None)
        for message in messages:
            self._remember(conversation_id, message.id)

    # =========================================================================
    # Receive
    # =========================================================================

    def handle_event(self, event: Event) -> None:
        """Apply one push event."""
        match event:
            case NewMessage(message=message):
                self._receive_message(message, event)
            case NewBroadcastMessage(message=message):
                self._receive_message(message, event)
            case MessageUpdated(message=message):
                self._receive_update(message)
            case ConversationCreated(conversation=conversation):
                self._upsert_conversation(conversation)
            case NewBroadcastChannel(conversation=conversation):
                is_new = conversation.id not in self._conversations
                self._upsert_conversation(conversation)
                if is_new:
                    self._notify(event)
            case ConversationUpdated(conversation=conversation):
                self._upsert_conversation(conversation)
            case ConversationDeleted(conversation_id=conversation_id):
                self._remove_conversation(conversation_id)
            case TypingStart(conversation_id=conversation_id, user_id=user_id):
                if user_id != self.viewer_id:
                    self.typing.setdefault(conversation_id, {})[user_id] = (
                        event.user_name or user_id
                    )
            case TypingStop(conversation_id=conversation_id, user_id=user_id):
                self._clear_typing(conversation_id, user_id)
            case Connected():
                self.connected = True
            case ConnectedUsers(user_ids=user_ids):
                self.online_user_ids = set(user_ids)
            case Heartbeat():
                pass
            case _:
                logger.warning(f"Unhandled push event: {event!r}")

    def _receive_message(self, message: MessagePayload, event: Event) -> None:
        conversation_id = message.conversation_id

        if message.client_id and message.client_id in self._pending:
            self._confirm(message.client_id, message)
            return

        timeline = self.timelines.get(conversation_id)
        if timeline is not None:
            is_new = timeline.merge(message)
        else:
            current = self._conversations.get(conversation_id)
            is_new = not (
                self._has_seen(conversation_id, message.id)
                or (
                    current is not None
                    and current.last_message is not None
                    and current.last_message.id == message.id
                )
            )
        self._remember(conversation_id, message.id)
        if not is_new:
            return

        self._set_last_message(message)
        if message.sender_id is not None:
            self._clear_typing(conversation_id, message.sender_id)

        if message.sender_id != self.viewer_id and message.message_type == "text":
            if conversation_id == self.active_conversation_id and self.visible:
                self._schedule_read(conversation_id)
            else:
                self._unread[conversation_id] = self._unread.get(conversation_id, 0) + 1

        self._notify(event)

    def _receive_update(self, message: MessagePayload) -> None:
        timeline = self.timelines.get(message.conversation_id)
        if timeline is not None:
            timeline.replace(message)

        current = self._conversations.get(message.conversation_id)
        if (
            current is not None
            and current.last_message is not None
            and current.last_message.id == message.id
        ):
            self._conversations[current.id] = dataclasses.replace(
                current, last_message=message
            )

    def _upsert_conversation(self, conversation: ConversationPayload) -> None:
        if conversation.unread_count is not None:
            self._unread[conversation.id] = conversation.unread_count
        else:
            self._unread.setdefault(conversation.id, 0)

        self._conversations[conversation.id] = conversation
        self._move_to_top(conversation.id)

    def _remove_conversation(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)
        if conversation_id in self._order:
            self._order.remove(conversation_id)
        self._unread.pop(conversation_id, None)
        self.typing.pop(conversation_id, None)
        self.drafts.pop(conversation_id, None)
        self._seen.pop(conversation_id, None)

        timeline = self.timelines.pop(conversation_id, None)
        if timeline is not None:
            for temp_id in timeline.pending_ids:
                self._pending.pop(temp_id, None)

        if self.active_conversation_id == conversation_id:
            self.close_conversation()

    def _set_last_message(self, message: MessagePayload) -> None:
        current = self._conversations.get(message.conversation_id)
        if current is None:
            return
        if current.last_message is not None and _is_older(message, current.last_message):
            return
        self._conversations[current.id] = dataclasses.replace(
            current, last_message=message, updated_at=message.created_at
        )
        self._move_to_top(current.id)

    def _move_to_top(self, conversation_id: str) -> None:
        if conversation_id in self._order:
            self._order.remove(conversation_id)
        self._order.insert(0, conversation_id)

    def _clear_typing(self, conversation_id: str, user_id: str) -> None:
        users = self.typing.get(conversation_id)
        if users is None:
            return
        users.pop(user_id, None)
        if not users:
            del self.typing[conversation_id]

    def _has_seen(self, conversation_id: str, message_id: str) -> bool:
        seen = self._seen.get(conversation_id)
        return seen is not None and message_id in seen

    def _remember(self, conversation_id: str, message_id: str) -> None:
        seen = self._seen.get(conversation_id)
        if seen is None:
            seen = self._seen[conversation_id] = collections.deque(
                maxlen=SEEN_IDS_PER_CONVERSATION
            )
        if message_id not in seen:
            seen.append(message_id)

    def _timeline(self, conversation_id: str) -> Timeline:
        timeline = self.timelines.get(conversation_id)
        if timeline is None:
            timeline = self.timelines[conversation_id] = Timeline(conversation_id)
        return timeline

    def _notify(self, event: Event) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.dispatch(event)
        except Exception as e:
            logger.exception(f"Notification dispatch failed: {e}")


def _is_older(message: MessagePayload, other: MessagePayload) -> bool:
    """True if ``message`` was created strictly before ``other``."""
    try:
        return datetime.fromisoformat(message.created_at) < datetime.fromisoformat(
            other.created_at
        )
    except (TypeError, ValueError):
        return False
