# =============================================================================
# Django Project Configuration Package
# =============================================================================
# Settings, root URLs, the ASGI application (HTTP + ws/events/ push channel),
# WSGI fallback and the Celery app.
#
# The Celery app is imported here so @shared_task in chat.tasks binds to it
# as soon as Django starts.
# =============================================================================

from config.celery import app as celery_app

__all__ = ("celery_app",)
