"""
Celery tasks for chat app.

This module defines async tasks for:
- Purging direct conversations both participants deleted
- Sweeping cleared direct conversations whose purge never ran

Related files:
    - services.py: ConversationService.purge_if_cleared
    - models.py: Conversation, Participant

Usage:
    from chat.tasks import purge_cleared_direct_conversation

    purge_cleared_direct_conversation.delay(conversation_id)

Beat schedule (config/celery.py):
    purge_cleared_direct_conversations runs hourly.
"""

import logging

from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_kwargs={"max_retries": 3},
)
def purge_cleared_direct_conversation(self, conversation_id: int) -> bool:
    """
    Hard delete a direct conversation if both sides still have it cleared.

    Scheduled when the second participant deletes the conversation. The
    condition is re-checked inside the service, so a message sent in the
    meantime keeps the conversation alive.

    Args:
        conversation_id: ID of the direct conversation

    Returns:
        True if the conversation was purged
    """
    from chat.services import ConversationService

    result = ConversationService.purge_if_cleared(conversation_id)
    if not result.success:
        logger.error(
            f"Purge of conversation {conversation_id} failed: {result.error}"
        )
        return False

    return result.data


@shared_task
def purge_cleared_direct_conversations() -> int:
    """
    Purge every direct conversation that both participants have cleared.

    Catches pairs whose per-conversation purge was never scheduled (broker
    down at the time) or exhausted its retries.

    Returns:
        Number of conversations purged
    """
    from chat.services import ConversationService

    purged = 0
    for conversation_id in ConversationService.cleared_direct_conversation_ids():
        try:
            result = ConversationService.purge_if_cleared(conversation_id)
        except Exception as e:
            logger.exception(f"Error purging conversation {conversation_id}: {e}")
            continue
        if result.success and result.data:
            purged += 1

    if purged:
        logger.info(f"Purged {purged} cleared direct conversations")

    return purged
