"""ASGI entry point for the *halaqa* project (the JSON views are async)."""

import os

from django.core.asgi import get_asgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'halaqa.settings')

application = get_asgi_application()
