"""WSGI entry point for the *halaqa* project."""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'halaqa.settings')

application = get_wsgi_application()
