import os
from datetime import timedelta
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'django-insecure-dev-only-change-me')

DEBUG = False

ALLOWED_HOSTS = []

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'channels',
    'apps.accounts',
    'apps.economy',
    'apps.treasury',
    'apps.matches',
    'apps.payments',
    'apps.claims',
    'apps.jobs',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'whitenoise.middleware.WhiteNoiseMiddleware',
    'config.middleware.RequestIDMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'config.urls'

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

ASGI_APPLICATION = 'config.asgi.application'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': BASE_DIR / 'db.sqlite3',
    }
}

CHANNEL_LAYERS = {
    'default': {
        'BACKEND': 'channels.layers.InMemoryChannelLayer',
    },
}

AUTH_PASSWORD_VALIDATORS = [
    {'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator'},
    {'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator'},
    {'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator'},
    {'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator'},
]

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Settlement
PLATFORM_FEE_BPS = int(os.environ.get('PLATFORM_FEE_BPS', '300'))
REFUND_FEE_BPS = int(os.environ.get('REFUND_FEE_BPS', '300'))
CLAIM_WINDOW = timedelta(hours=1)
CLAIM_GRACE_PERIOD = timedelta(seconds=60)
CLAIM_RETRY_WINDOW = timedelta(hours=24)
REFUND_WINDOW = timedelta(hours=4)
HEARTBEAT_TIMEOUT = timedelta(seconds=30)
DISCONNECT_GRACE = timedelta(seconds=30)
WAITING_MATCH_TIMEOUT = timedelta(minutes=10)
ORPHAN_STAKE_TIMEOUT = timedelta(minutes=15)

DISCONNECT_CHECK_INTERVAL = timedelta(seconds=10)
TIMEOUT_SWEEP_INTERVAL = timedelta(seconds=60)
CLAIM_EXPIRY_INTERVAL = timedelta(minutes=5)

# Treasury (payout wallet on the token network)
TREASURY_RPC_URL = os.environ.get('TREASURY_RPC_URL', '')
TREASURY_PRIVATE_KEY = os.environ.get('TREASURY_PRIVATE_KEY', '')
TREASURY_TOKEN_ADDRESS = os.environ.get('TREASURY_TOKEN_ADDRESS', '')
TREASURY_RECEIPT_TIMEOUT = int(os.environ.get('TREASURY_RECEIPT_TIMEOUT', '120'))

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': os.environ.get('DJANGO_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
        'apps': {
            'handlers': ['console'],
            'level': os.environ.get('APP_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
        'settlement.security': {
            'handlers': ['console'],
            'level': 'WARNING',
            'propagate': False,
        },
    },
}
