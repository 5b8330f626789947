"""
ASGI config for the DocChat backend.

Chat answers are relayed as streaming HTTP responses; no WebSocket routing
is needed.
"""
import os

from django.core.asgi import get_asgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

application = get_asgi_application()
