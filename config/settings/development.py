import os

from .base import *  # noqa: F401, F403

DEBUG = True

ALLOWED_HOSTS = ['*']

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.postgresql',
        'NAME': os.environ.get('DB_NAME', 'settlement'),
        'USER': os.environ.get('DB_USER', 'settlement'),
        'PASSWORD': os.environ.get('DB_PASSWORD', 'settlement'),
        'HOST': os.environ.get('DB_HOST', 'localhost'),
        'PORT': os.environ.get('DB_PORT', '5432'),
    }
}

LOGGING['loggers']['apps']['level'] = 'DEBUG'  # noqa: F405

# Use SQLite as fallback for development without PostgreSQL
if os.environ.get('USE_SQLITE', 'false').lower() == 'true':
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }
