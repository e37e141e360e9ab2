"""
Django settings for the grocery fulfillment service.

Values are read from the environment so the same settings module serves
local development, CI and containers.
"""
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name: str, default: bool = False) -> bool:
    return os.environ.get(name, str(default)).lower() in ('1', 'true', 'yes', 'on')


SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'django-insecure-fulfillment-dev-key')
DEBUG = env_bool('DJANGO_DEBUG', True)
ALLOWED_HOSTS = [h for h in os.environ.get('DJANGO_ALLOWED_HOSTS', '*').split(',') if h]

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'core',
    'inventory',
    'orders',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
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

WSGI_APPLICATION = 'config.wsgi.application'

# Database: SQLite unless PostgreSQL is configured
if os.environ.get('POSTGRES_DB'):
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': os.environ['POSTGRES_DB'],
            'USER': os.environ.get('POSTGRES_USER', 'postgres'),
            'PASSWORD': os.environ.get('POSTGRES_PASSWORD', ''),
            'HOST': os.environ.get('POSTGRES_HOST', 'localhost'),
            'PORT': os.environ.get('POSTGRES_PORT', '5432'),
            'ATOMIC_REQUESTS': False,
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'

# =============================================================================
# Django REST Framework
# =============================================================================

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework.authentication.SessionAuthentication',
        'rest_framework.authentication.BasicAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAuthenticated',
    ],
    'DEFAULT_PAGINATION_CLASS': 'rest_framework.pagination.PageNumberPagination',
    'PAGE_SIZE': 20,
}

# =============================================================================
# Celery
# =============================================================================

REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')

CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', REDIS_URL)
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', REDIS_URL)
CELERY_TASK_ALWAYS_EAGER = env_bool('CELERY_ALWAYS_EAGER', False)
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TIMEZONE = TIME_ZONE

CELERY_BEAT_SCHEDULE = {
    'reconcile-inventory': {
        'task': 'orders.tasks.reconcile_inventory',
        'schedule': 15 * 60,
    },
    'scan-low-stock': {
        'task': 'orders.tasks.scan_low_stock',
        'schedule': 60 * 60,
    },
}

# =============================================================================
# Rate limiting
# =============================================================================

# Relaxed during development; enabled by default when DEBUG is off
RATE_LIMIT_ENABLED = env_bool('RATE_LIMIT_ENABLED', not DEBUG)
RATE_LIMIT = {
    'MAX_REQUESTS': int(os.environ.get('RATE_LIMIT_MAX_REQUESTS', 120)),
    'WINDOW_SECONDS': int(os.environ.get('RATE_LIMIT_WINDOW_SECONDS', 60)),
}

# =============================================================================
# Fulfillment
# =============================================================================

FULFILLMENT = {
    'TAX_RATE': os.environ.get('FULFILLMENT_TAX_RATE', '0.05'),
    'DELIVERY_FEE': os.environ.get('FULFILLMENT_DELIVERY_FEE', '40.00'),
    'FREE_DELIVERY_THRESHOLD': os.environ.get('FULFILLMENT_FREE_DELIVERY_THRESHOLD', '500.00'),
    'ORDER_NUMBER_PREFIX': 'ORD',
    'ORDER_NUMBER_MAX_ATTEMPTS': 5,
    'OTP_LENGTH': 6,
    'EVENT_SINK': os.environ.get('FULFILLMENT_EVENT_SINK', 'orders.events.log_event_sink'),
    'RETURN_PICKED_STOCK_ON_CANCEL': env_bool('FULFILLMENT_RETURN_PICKED_STOCK', True),
    # Auth groups granting the picker and rider roles; staff users act as admins
    'PICKER_GROUP': os.environ.get('FULFILLMENT_PICKER_GROUP', 'pickers'),
    'RIDER_GROUP': os.environ.get('FULFILLMENT_RIDER_GROUP', 'riders'),
}

# =============================================================================
# Logging
# =============================================================================

LOG_LEVEL = os.environ.get('DJANGO_LOG_LEVEL', 'INFO')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} [{levelname}] {name}: {message}',
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
        'core': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'inventory': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
        'orders': {'handlers': ['console'], 'level': LOG_LEVEL, 'propagate': False},
    },
}
