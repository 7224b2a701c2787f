"""
Celery app initialization for the retention_desk project.

Tasks import `app` from here; the worker is started with `celery -A CELERY_INIT worker`.
"""

import os
from celery import Celery

# Set default Django settings
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'retention_desk.settings')

app = Celery('retention_desk')

# Load configuration from Django settings with CELERY namespace
app.config_from_object('django.conf:settings', namespace='CELERY')

# Auto-discover tasks from all registered Django apps
app.autodiscover_tasks()
