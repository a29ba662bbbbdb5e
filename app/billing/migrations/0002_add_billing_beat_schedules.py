"""
Register the billing periodic tasks with celery-beat.

- Payment retry tick: hourly
- Errored webhook replay: every 15 minutes
- Period-end cancellation sweep: hourly
- Renewal reminders: daily
"""

from django.db import migrations

SCHEDULES = [
    {
        "name": "Billing: Payment Retry Tick",
        "task": "billing.tasks.run_payment_retry_tick",
        "every": 1,
        "period": "hours",
        "description": "Attempts payment of failed invoices whose retry time has come.",
    },
    {
        "name": "Billing: Replay Errored Webhooks",
        "task": "billing.tasks.retry_errored_webhook_events",
        "every": 15,
        "period": "minutes",
        "description": "Re-applies webhook events left in ERROR from their stored payload.",
    },
    {
        "name": "Billing: Expire Pending Cancellations",
        "task": "billing.tasks.expire_pending_cancellations",
        "every": 1,
        "period": "hours",
        "description": (
            "Cancels subscriptions flagged cancel_at_period_end whose period "
            "ended without a gateway cancellation event."
        ),
    },
    {
        "name": "Billing: Renewal Reminders",
        "task": "billing.tasks.send_renewal_reminders",
        "every": 1,
        "period": "days",
        "description": "Reminds customers of renewals coming up in the next days.",
    },
]


def create_periodic_tasks(apps, schema_editor):
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    for entry in SCHEDULES:
        schedule, _ = IntervalSchedule.objects.get_or_create(
            every=entry["every"],
            period=entry["period"],
        )
        PeriodicTask.objects.get_or_create(
            name=entry["name"],
            defaults={
                "task": entry["task"],
                "interval": schedule,
                "enabled": True,
                "description": entry["description"],
            },
        )


def remove_periodic_tasks(apps, schema_editor):
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    PeriodicTask.objects.filter(name__in=[entry["name"] for entry in SCHEDULES]).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("billing", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_tasks, remove_periodic_tasks),
    ]
