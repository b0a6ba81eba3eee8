"""
Add celery-beat schedule for escrow auto-validation.

Creates the periodic task that releases escrows whose validation window
lapsed without seller confirmation. Runs every 5 minutes, so a release
happens at most one interval after the deadline.
"""

from django.db import migrations

TASK_NAME = "Process Escrow Auto-Validations"


def create_periodic_task(apps, schema_editor):
    IntervalSchedule = apps.get_model("django_celery_beat", "IntervalSchedule")
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")

    schedule, _ = IntervalSchedule.objects.get_or_create(
        every=5,
        period="minutes",
    )

    PeriodicTask.objects.get_or_create(
        name=TASK_NAME,
        defaults={
            "task": "escrow.workers.auto_validation.run_auto_validations",
            "interval": schedule,
            "enabled": True,
            "description": (
                "Releases escrows awaiting validation whose deadline has "
                "passed. Each record is released independently."
            ),
        },
    )


def remove_periodic_task(apps, schema_editor):
    PeriodicTask = apps.get_model("django_celery_beat", "PeriodicTask")
    PeriodicTask.objects.filter(name=TASK_NAME).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("escrow", "0001_initial"),
        ("django_celery_beat", "0019_alter_periodictasks_options"),
    ]

    operations = [
        migrations.RunPython(create_periodic_task, remove_periodic_task),
    ]
