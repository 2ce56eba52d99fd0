"""
Celery configuration for the Django application.

Celery is a distributed task queue that enables:
- Background task processing (purging conversations both sides deleted)
- Scheduled/periodic tasks (the cleared-conversation sweeper)
- Async task execution without blocking web requests

This configuration uses Redis as both the message broker and result backend.
Tasks are auto-discovered from all registered Django apps.

Usage:
    # Define a task in any app's tasks.py:
    from celery import shared_task

    @shared_task
    def purge_something(object_id):
        # Task implementation
        pass

    # Call the task asynchronously:
    purge_something.delay(object_id)

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery
from celery.schedules import crontab

# Set the default Django settings module for the Celery worker
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

# Create Celery application instance
# The name should match the Django project name
app = Celery("config")

# Load configuration from Django settings
# All Celery settings should be prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

# Auto-discover tasks from all registered Django apps
# Celery will look for a tasks.py module in each installed app
app.autodiscover_tasks()

# Periodic tasks (synced into django_celery_beat's DatabaseScheduler)
app.conf.beat_schedule = {
    "purge-cleared-direct-conversations": {
        "task": "chat.tasks.purge_cleared_direct_conversations",
        "schedule": crontab(minute=0),
    },
}
