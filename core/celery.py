# core/celery.py
from __future__ import annotations

import os

from celery import Celery

# Default Django settings module
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "core.settings")

app = Celery("core")

# Configuration from settings.py, CELERY_ prefix
# (CELERY_BROKER_URL, CELERY_RESULT_BACKEND, CELERY_TASK_ALWAYS_EAGER...)
app.config_from_object("django.conf:settings", namespace="CELERY")

# Picks up tasks.py of every installed app (fiskalizacija.tasks)
app.autodiscover_tasks()
