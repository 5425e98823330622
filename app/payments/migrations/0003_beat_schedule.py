"""
Create the celery-beat periodic tasks for the escrow engine.

- Automatic escrow release (ESCROW_AUTO_RELEASE_INTERVAL_MINUTES, hourly)
- Premium placement scheduler (PREMIUM_SCHEDULER_INTERVAL_HOURS, daily)
- Reconciliation of records flagged inconsistent (hourly)
- Webhook retry, stuck-webhook reset and old-webhook cleanup
"""

from django.conf import settings
from django.db import migrations

PERIODIC_TASKS = [
    (
        "Release Due Escrows",
        "payments.tasks.release_due_escrows",
        settings.ESCROW_AUTO_RELEASE_INTERVAL_MINUTES,
        "minutes",
        "Releases held payments whose ceremony is complete and release time has passed.",
    ),
    (
        "Premium Placement Scheduler",
        "payments.tasks.run_premium_scheduler",
        settings.PREMIUM_SCHEDULER_INTERVAL_HOURS,
        "hours",
        "Expires premium placements and sends expiry reminders.",
    ),
    (
        "Reconcile Inconsistent Payments",
        "payments.tasks.reconcile_inconsistent_payments",
        60,
        "minutes",
        "Re-reads Stripe for payment records flagged inconsistent.",
    ),
    (
        "Retry Failed Webhooks",
        "payments.tasks.retry_failed_webhooks",
        15,
        "minutes",
        "Re-queues failed Stripe webhook events with retries left.",
    ),
    (
        "Cleanup Stuck Webhooks",
        "payments.tasks.cleanup_stuck_webhooks",
        30,
        "minutes",
        "Resets webhook events stuck in processing.",
    ),
    (
        "Cleanup Old Webhooks",
        "payments.tasks.cleanup_old_webhooks",
        1,
        "days",
        "Deletes processed webhook events older than 90 days.",
    ),
]


def create_periodic_tasks(apps, schema_editor):
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    for name, task, every, period, description in PERIODIC_TASKS:
        schedule, _ = IntervalSchedule.objects.get_or_create(every=every, period=period)
        PeriodicTask.objects.get_or_create(
            name=name,
            defaults={
                "task": task,
                "interval": schedule,
                "enabled": True,
                "description": description,
            },
        )


def remove_periodic_tasks(apps, schema_editor):
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")
    PeriodicTask.objects.filter(name__in=[entry[0] for entry in PERIODIC_TASKS]).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("payments", "0002_premium_placements"),
        ("django_celery_beat", "0018_improve_crontab_helptext"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
