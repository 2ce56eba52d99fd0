"""
Constants and configuration for chat module features.

This module centralizes configuration values for:
- Message operations (content limits, edit window)
- Reaction management (emoji restrictions)
- The realtime event hub (heartbeat, liveness, per-channel back-pressure)
- Typing indicators (quiet period)

Hub and typing values can be overridden through Django settings
(see get_hub_setting), which is how tests shorten timers.

Import example:
    from chat.constants import HUB_CONFIG, MESSAGE_CONFIG
"""

from typing import Any, Final


# =============================================================================
# Message Configuration
# =============================================================================


class MESSAGE_CONFIG:
    """Configuration for message operations."""

    # Content limits
    MAX_CONTENT_LENGTH: Final[int] = 10000  # Characters

    # Edit settings
    EDIT_TIME_LIMIT_SECONDS: Final[int] = 300  # 5 minutes

    # Placeholder shown instead of soft-deleted content
    DELETED_PLACEHOLDER: Final[str] = "[Message deleted]"


# =============================================================================
# Reaction Configuration
# =============================================================================


class REACTION_CONFIG:
    """Configuration for message reactions."""

    MAX_EMOJI_LENGTH: Final[int] = (
        8  # Max characters for a single emoji (handles compound emojis)
    )

    # None = allow any emoji-sized string
    ALLOWED_EMOJIS: Final[tuple | None] = None

    # Suggestions only, not restrictions
    QUICK_REACTIONS: Final[tuple] = ("👍", "❤️", "😂", "😮", "😢", "🙏")


# =============================================================================
# Event Hub Configuration
# =============================================================================


class HUB_CONFIG:
    """Configuration for the realtime event hub."""

    # Keep-alive frame cadence on every open channel
    HEARTBEAT_INTERVAL_SECONDS: Final[float] = 30.0

    # A channel with no inbound traffic (acks included) for this long is pruned
    LIVENESS_WINDOW_SECONDS: Final[float] = 75.0

    # Bound on a single websocket write before the frame is dropped
    WRITE_TIMEOUT_SECONDS: Final[float] = 5.0

    # Channel layer capacity per push channel; newer frames are dropped when full
    MAX_PENDING_FRAMES: Final[int] = 256

    # Granularity of the maintenance loop (typing expiry runs every tick)
    TICK_SECONDS: Final[float] = 0.5

    # Cache TTL for conversation participant ids used in fan-out
    PARTICIPANT_CACHE_SECONDS: Final[int] = 60


# =============================================================================
# Typing Indicator Configuration
# =============================================================================


class TYPING_CONFIG:
    """Configuration for typing indicators."""

    # Typing state clears after this much silence with no explicit stop
    QUIET_PERIOD_SECONDS: Final[float] = 2.0


# =============================================================================
# WebSocket close codes
# =============================================================================


class CLOSE_CODES:
    """Application close codes sent on the push channel."""

    UNAUTHENTICATED: Final[int] = 4001
    NOT_PARTICIPANT: Final[int] = 4003
    PRUNED: Final[int] = 4008


def get_hub_setting(name: str, default: Any) -> Any:
    """
    Read a hub/typing tunable from Django settings.

    ``CHAT_HUB_<NAME>`` overrides the constant, e.g.
    ``CHAT_HUB_HEARTBEAT_INTERVAL_SECONDS = 5``.
    """
    from django.conf import settings

    return getattr(settings, f"CHAT_HUB_{name}", default)
