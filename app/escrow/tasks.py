"""
Celery tasks for the escrow app.

Celery autodiscovery imports `<app>.tasks`; the task bodies live in
escrow.workers.

Usage:
    from escrow.tasks import run_auto_validations

    run_auto_validations.delay()
"""

from escrow.workers.auto_validation import run_auto_validations

__all__ = ["run_auto_validations"]
