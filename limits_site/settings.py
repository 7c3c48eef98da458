"""
Django settings for limits_site.

Secrets and debug mode come from the environment; everything else has a
development-friendly default.
"""
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'dev-insecure-secret-key')

DEBUG = os.environ.get('DJANGO_DEBUG', 'false').lower() in ('1', 'true', 'yes')

ALLOWED_HOSTS = [h for h in os.environ.get('DJANGO_ALLOWED_HOSTS', '*').split(',') if h]

INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'rest_framework',
    'request_limits.apps.RequestLimitsConfig',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
]

ROOT_URLCONF = 'limits_site.urls'

WSGI_APPLICATION = 'limits_site.wsgi.application'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': BASE_DIR / 'db.sqlite3',
    }
}

USE_TZ = True
TIME_ZONE = 'UTC'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

REST_FRAMEWORK = {
    'EXCEPTION_HANDLER': 'request_limits.exception_handlers.custom_exception_handler',
    'DEFAULT_AUTHENTICATION_CLASSES': [],
    'DEFAULT_PERMISSION_CLASSES': [],
}

# Rate limiting
RATE_LIMIT_PER_IP = int(os.environ.get('RATE_LIMIT_PER_IP', 60))
RATE_LIMIT_PER_USER = int(os.environ.get('RATE_LIMIT_PER_USER', 45))
RATE_LIMIT_WINDOW_MS = int(os.environ.get('RATE_LIMIT_WINDOW_MS', 60_000))

# Counter store bounds
RATE_LIMIT_STORE_MAX_ENTRIES = 10_000
RATE_LIMIT_STORE_SWEEP_THRESHOLD = 5_000
RATE_LIMIT_STORE_SWEEP_BATCH = 1_000
RATE_LIMIT_STORE_THREADSAFE = True

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'simple': {
            'format': '%(asctime)s %(levelname)s %(name)s %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'simple',
        },
    },
    'loggers': {
        'request_limits': {
            'handlers': ['console'],
            'level': os.environ.get('RATE_LIMIT_LOG_LEVEL', 'INFO'),
        },
    },
}
