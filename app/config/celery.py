"""
Celery configuration for the subscription billing service.

Celery runs the billing background work:
- Notification delivery queued after ledger commits
- Periodic jobs registered with django-celery-beat (payment retry tick,
  errored webhook replay, period-end sweep, renewal reminders)

Redis is both the message broker and result backend. Tasks are
auto-discovered from all installed Django apps.

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

app.autodiscover_tasks()
