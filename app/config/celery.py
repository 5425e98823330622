"""
Celery configuration for the escrow payment engine.

Workers run three kinds of jobs:
- Webhook processing (payments.tasks.process_webhook_event)
- Periodic sweeps (automatic escrow release, premium placement expiry),
  scheduled through django_celery_beat's DatabaseScheduler
- Push notification delivery (notifications.tasks.send_push_notification)

Redis is both broker and result backend. Tasks are auto-discovered from the
tasks.py module of every installed app.

Usage:
    celery -A config worker -l info
    celery -A config beat -l info

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
