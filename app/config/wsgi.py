"""
WSGI config for the Django application.

Fallback for serving the REST API and admin behind a traditional WSGI
server. Push channels (ws/events/) are served by config/asgi.py; REST calls
made here still publish through the Redis channel layer when REDIS_URL is
set. With the in-memory layer nothing reaches the ASGI process and clients
fall back to re-fetching.

For more information on this file, see:
https://docs.djangoproject.com/en/5.2/howto/deployment/wsgi/
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

application = get_wsgi_application()
