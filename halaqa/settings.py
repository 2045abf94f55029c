"""
Django settings for the *halaqa* project.

Values come from environment variables (optionally loaded from a ``.env`` file)
so the same module serves local development and production deployments.
"""

import os
from pathlib import Path

import logfire
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {'1', 'true', 'yes', 'on'}


def _env_list(name: str, default: str = '') -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(',') if item.strip()]


# ---------------------------------------------------------------------------
# Core
# ---------------------------------------------------------------------------

SECRET_KEY = os.getenv('SECRET_KEY', 'unsafe-development-key')
DEBUG = _env_bool('DEBUG', False)
ALLOWED_HOSTS = _env_list('ALLOWED_HOSTS', 'localhost,127.0.0.1')

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'django_ratelimit',
    'recitation',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
    # Must sit below the auth middleware so process_exception sees domain errors
    'halaqa.error_middleware.ApiErrorMiddleware',
]

ROOT_URLCONF = 'halaqa.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'halaqa.wsgi.application'
ASGI_APPLICATION = 'halaqa.asgi.application'

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

if os.getenv('DATABASE_ENGINE', 'sqlite').strip().lower().startswith('postgres'):
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': os.getenv('POSTGRES_DB', 'halaqa'),
            'USER': os.getenv('POSTGRES_USER', 'halaqa'),
            'PASSWORD': os.getenv('POSTGRES_PASSWORD', ''),
            'HOST': os.getenv('POSTGRES_HOST', 'localhost'),
            'PORT': os.getenv('POSTGRES_PORT', '5432'),
            'CONN_MAX_AGE': 600,
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': os.getenv('SQLITE_PATH', str(BASE_DIR / 'db.sqlite3')),
        }
    }

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# ---------------------------------------------------------------------------
# Caches / rate limiting
# ---------------------------------------------------------------------------

# Rate-limit counters live in their own cache so they can be shared between
# workers. Run ``manage.py createcachetable`` once per database.
CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
    },
    'ratelimit': {
        'BACKEND': 'halaqa.cache_backends.AtomicCounterDatabaseCache',
        'LOCATION': 'ratelimit_counters',
    },
}
RATELIMIT_USE_CACHE = 'ratelimit'
RATELIMIT_ENABLE = _env_bool('RATELIMIT_ENABLE', True)

# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

AUTH_PASSWORD_VALIDATORS = [
    {'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator'},
    {'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator'},
    {'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator'},
    {'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator'},
]

LOGIN_URL = '/admin/login/'

# ---------------------------------------------------------------------------
# I18N / time
# ---------------------------------------------------------------------------

LANGUAGE_CODE = 'en-us'
# "today" in the Personal Mushaf recency buckets is a calendar day in this zone
TIME_ZONE = os.getenv('TIME_ZONE', 'UTC')
USE_I18N = True
USE_TZ = True

STATIC_URL = '/static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

# ---------------------------------------------------------------------------
# Recitation review
# ---------------------------------------------------------------------------

RECITATION = {
    'RECENT_WINDOW_DAYS': int(os.getenv('RECITATION_RECENT_DAYS', '7')),
    'TREND_WINDOW_DAYS': int(os.getenv('RECITATION_TREND_DAYS', '30')),
    'LEDGER_MAX_RETRIES': int(os.getenv('RECITATION_LEDGER_MAX_RETRIES', '5')),
    'HEARTBEAT_STALE_AFTER_SECONDS': int(
        os.getenv('RECITATION_HEARTBEAT_STALE_SECONDS', '180')
    ),
}

# ---------------------------------------------------------------------------
# Logging / observability
# ---------------------------------------------------------------------------

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
LOGFIRE_TOKEN = os.getenv('LOGFIRE_TOKEN')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'plain': {'format': '%(asctime)s %(levelname)s %(name)s: %(message)s'},
    },
    'handlers': {
        'console': {'class': 'logging.StreamHandler', 'formatter': 'plain'},
    },
    'root': {'handlers': ['console'], 'level': LOG_LEVEL},
    'loggers': {
        'django.request': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
        'recitation': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
    },
}

if LOGFIRE_TOKEN:
    logfire.configure(
        token=LOGFIRE_TOKEN,
        service_name='halaqa',
        send_to_logfire='if-token-present',
    )
    logfire.instrument_django()
    LOGGING['handlers']['logfire'] = {'class': 'logfire.LogfireLoggingHandler'}
    LOGGING['root']['handlers'].append('logfire')
    LOGGING['loggers']['recitation']['handlers'].append('logfire')
