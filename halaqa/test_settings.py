"""
Test-specific Django settings that extend the main settings.

This module provides default values for environment variables that are required
in the main settings but may not be available in CI/test environments.
"""

import os

if not os.getenv('SECRET_KEY'):
    os.environ['SECRET_KEY'] = 'test-secret-key-django-testing-only'

# Never ship test logs to Logfire
os.environ.pop('LOGFIRE_TOKEN', None)

# Import all settings from the main settings module
from .settings import *  # noqa: F403, F401, E402

# SQLite unless a PostgreSQL server is provided (the threaded ledger race test
# only runs against PostgreSQL).
if os.getenv('POSTGRES_HOST'):
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': os.getenv('POSTGRES_DB', 'test_db'),
            'USER': os.getenv('POSTGRES_USER', 'test_user'),
            'PASSWORD': os.getenv('POSTGRES_PASSWORD', 'test_password'),
            'HOST': os.getenv('POSTGRES_HOST', 'localhost'),
            'PORT': os.getenv('POSTGRES_PORT', '5432'),
            'CONN_MAX_AGE': 0,  # No persistent connections
            'OPTIONS': {},
            'TEST': {
                'NAME': None,  # Use default test database name
            },
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': ':memory:',
        }
    }

CACHES = {
    'default': {'BACKEND': 'django.core.cache.backends.locmem.LocMemCache'},
    'ratelimit': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'ratelimit-tests',
    },
}

# Local-memory counters are per process, which is fine for tests
SILENCED_SYSTEM_CHECKS = ['django_ratelimit.E003', 'django_ratelimit.W001']

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']

DEBUG = False
