"""
ASGI config for DocuChat backend.

Serves the async JSON views, including the streamed answer endpoint.
"""
import os

from django.core.asgi import get_asgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

application = get_asgi_application()
