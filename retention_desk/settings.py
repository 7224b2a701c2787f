"""
Django settings for the retention_desk project.

Every deploy-specific value comes from the environment.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'dev-insecure-retention-desk')
DEBUG = os.environ.get('DJANGO_DEBUG', 'false').lower() == 'true'
ALLOWED_HOSTS = [h for h in os.environ.get('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',') if h]

ENV = os.environ.get('ENV', 'DEV')

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'assignments',
    'dialer',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
]

ROOT_URLCONF = 'retention_desk.urls'

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

if os.environ.get('POSTGRES_DB'):
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': os.environ['POSTGRES_DB'],
            'USER': os.environ.get('POSTGRES_USER', 'postgres'),
            'PASSWORD': os.environ.get('POSTGRES_PASSWORD', ''),
            'HOST': os.environ.get('POSTGRES_HOST', 'localhost'),
            'PORT': os.environ.get('POSTGRES_PORT', '5432'),
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

USE_TZ = True
TIME_ZONE = 'UTC'
STATIC_URL = 'static/'

# Redis / Celery
REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')
CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', REDIS_URL)
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', REDIS_URL)
CELERY_TASK_SERIALIZER = 'json'
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_ALWAYS_EAGER = os.environ.get('CELERY_TASK_ALWAYS_EAGER', 'false').lower() == 'true'

# VICIdial non-agent API
VICIDIAL_BASE_URL = os.environ.get('VICIDIAL_BASE_URL', '')
VICIDIAL_API_USER = os.environ.get('VICIDIAL_API_USER', '')
VICIDIAL_API_PASS = os.environ.get('VICIDIAL_API_PASS', '')
VICIDIAL_API_SOURCE = os.environ.get('VICIDIAL_API_SOURCE', 'retention_portal')
VICIDIAL_DEFAULT_CAMPAIGN_ID = os.environ.get('VICIDIAL_DEFAULT_CAMPAIGN_ID', '')
VICIDIAL_DEFAULT_LIST_ID = os.environ.get('VICIDIAL_DEFAULT_LIST_ID', '')
VICIDIAL_DEFAULT_PHONE_CODE = os.environ.get('VICIDIAL_DEFAULT_PHONE_CODE', '1')
VICIDIAL_UNASSIGN_STATUS = os.environ.get('VICIDIAL_UNASSIGN_STATUS', 'ERI')

RETENTION_PORTAL_BASE_URL = os.environ.get('RETENTION_PORTAL_BASE_URL', 'http://localhost:8000')

# Bulk assignment
ASSIGNMENT_BATCH_SIZE = int(os.environ.get('ASSIGNMENT_BATCH_SIZE', '500'))
ASSIGNMENT_MAX_RETRIES = int(os.environ.get('ASSIGNMENT_MAX_RETRIES', '3'))
BULK_ASSIGN_MAX_LEADS = int(os.environ.get('BULK_ASSIGN_MAX_LEADS', '2000'))

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

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
        'assignments': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
        'dialer': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
        'retention_desk': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
    },
}
