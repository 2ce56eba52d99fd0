"""
Notification dispatcher for inbound chat events.

Decides, per qualifying event, whether the viewer gets a sound, an OS
notification, both or nothing, then performs those side effects through
an AlertSink supplied by the host (desktop shell, browser bridge, test).

Decision Rules:
    - Only newMessage, newBroadcastMessage and newBroadcastChannel qualify
    - Never alert for the viewer's own messages or channels
    - Suppress when the event's conversation is open AND the view has focus
    - Sound and OS notification are independent preferences
    - OS notifications additionally need permission == GRANTED

Design Decisions:
    - evaluate() is pure so the rules are testable without a sink
    - Sink failures degrade to whatever still works; messaging never fails
      because a sound could not play
    - DENIED is final: request_permission() does not ask again
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Protocol

from chat.events import Event, NewBroadcastChannel, NewBroadcastMessage, NewMessage

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 120


class NotificationPermission(str, enum.Enum):
    """OS notification permission (not yet asked / granted / denied)."""

    DEFAULT = "default"
    GRANTED = "granted"
    DENIED = "denied"


@dataclass
class NotificationPreferences:
    sound_enabled: bool = True
    desktop_enabled: bool = True


@dataclass(frozen=True)
class Alert:
    """What the dispatcher decided to do for one event."""

    conversation_id: str
    title: str
    body: str
    icon: str = ""
    play_sound: bool = False
    show_notification: bool = False


class AlertSink(Protocol):
    """Host capabilities used for alerts."""

    def play_sound(self) -> None: ...

    def show_notification(
        self, title: str, body: str, icon: str = "", tag: str = ""
    ) -> None: ...

    async def request_permission(self) -> NotificationPermission | str: ...


class NotificationDispatcher:
    """
    Turns qualifying push events into alerts for one viewer.

    The synchronizer keeps focus and the active conversation current via
    set_focus() and set_active_conversation().
    """

    def __init__(
        self,
        viewer_id,
        sink: AlertSink | None = None,
        preferences: NotificationPreferences | None = None,
        permission: NotificationPermission = NotificationPermission.DEFAULT,
    ):
        self.viewer_id = str(viewer_id)
        self.sink = sink
        self.preferences = preferences or NotificationPreferences()
        self.permission = NotificationPermission(permission)
        self.focused = True
        self.active_conversation_id: str | None = None

    def set_focus(self, focused: bool) -> None:
        self.focused = bool(focused)

    def set_active_conversation(self, conversation_id) -> None:
        self.active_conversation_id = (
            str(conversation_id) if conversation_id is not None else None
        )

    def set_preferences(
        self, sound_enabled: bool | None = None, desktop_enabled: bool | None = None
    ) -> None:
        if sound_enabled is not None:
            self.preferences.sound_enabled = sound_enabled
        if desktop_enabled is not None:
            self.preferences.desktop_enabled = desktop_enabled

    def is_suppressed(self, conversation_id: str) -> bool:
        """True while the conversation is open in a focused view."""
        return self.focused and self.active_conversation_id == conversation_id

    def evaluate(self, event: Event) -> Alert | None:
        """
        Decide the alert for ``event`` without side effects.

        Returns:
            Alert with at least one channel enabled, or None
        """
        match event:
            case NewMessage(message=message):
                if message.message_type != "text" or message.is_deleted:
                    return None
                sender_id = message.sender_id
                conversation_id = message.conversation_id
                title = message.sender_name or "New message"
                body = message.content
                icon = message.sender_avatar
            case NewBroadcastMessage(message=message, conversation_name=name):
                if message.message_type != "text" or message.is_deleted:
                    return None
                sender_id = message.sender_id
                conversation_id = message.conversation_id
                title = name or message.sender_name or "New announcement"
                body = message.content
                icon = message.sender_avatar
            case NewBroadcastChannel(conversation=conversation):
                owners = [p.user_id for p in conversation.participants if p.role == "owner"]
                sender_id = owners[0] if owners else None
                conversation_id = conversation.id
                title = "New broadcast channel"
                body = conversation.name
                icon = conversation.image_url
            case _:
                return None

        if sender_id is not None and str(sender_id) == self.viewer_id:
            return None
        if self.is_suppressed(conversation_id):
            return None

        play_sound = self.preferences.sound_enabled
        show_notification = (
            self.preferences.desktop_enabled
            and self.permission == NotificationPermission.GRANTED
        )
        if not (play_sound or show_notification):
            return None

        if len(body) > PREVIEW_LENGTH:
            body = body[: PREVIEW_LENGTH - 3] + "..."

        return Alert(
            conversation_id=conversation_id,
            title=title,
            body=body,
            icon=icon,
            play_sound=play_sound,
            show_notification=show_notification,
        )

    def dispatch(self, event: Event) -> Alert | None:
        """Evaluate ``event`` and perform the resulting side effects."""
        alert = self.evaluate(event)
        if alert is None or self.sink is None:
            return alert

        if alert.play_sound:
            try:
                self.sink.play_sound()
            except Exception as e:
                logger.warning(f"Alert sound failed: {e}")

        if alert.show_notification:
            try:
                self.sink.show_notification(
                    alert.title, alert.body, icon=alert.icon, tag=alert.conversation_id
                )
            except Exception as e:
                logger.warning(f"OS notification failed: {e}")

        return alert

    async def request_permission(self) -> NotificationPermission:
        """
        Ask the host for OS notification permission.

        Only asks from DEFAULT. A failing or unrecognised answer leaves the
        state unchanged, so alerts continue sound-only.
        """
        if self.permission != NotificationPermission.DEFAULT or self.sink is None:
            return self.permission

        try:
            answer = await self.sink.request_permission()
        except Exception as e:
            logger.warning(f"Notification permission request failed: {e}")
            return self.permission

        try:
            self.permission = NotificationPermission(answer)
        except ValueError:
            logger.warning(f"Unrecognised notification permission answer: {answer!r}")

        return self.permission
