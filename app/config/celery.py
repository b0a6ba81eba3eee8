"""
Celery configuration for the escrow engine.

Celery runs the time-driven part of the escrow lifecycle: the
auto-validation reconciler is a periodic task (scheduled by celery-beat's
DatabaseScheduler) that releases escrows whose validation window has lapsed.

Redis is used as both the message broker and result backend. Tasks are
auto-discovered from the `tasks` module of every installed Django app.

Usage:
    # Trigger a reconciler run outside the beat schedule:
    from escrow.tasks import run_auto_validations

    run_auto_validations.delay()

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import logging
import os

from celery import Celery

# Set the default Django settings module for the Celery worker
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

app.autodiscover_tasks()

logger = logging.getLogger(__name__)


@app.task(bind=True, ignore_result=True)
def debug_task(self):
    """
    Log the task request to verify worker connectivity.

    Usage:
        from config.celery import debug_task
        debug_task.delay()
    """
    logger.info("Celery debug task request: %r", self.request)
