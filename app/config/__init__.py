# =============================================================================
# Django Project Configuration Package
# =============================================================================
# Settings, URLs, the WSGI application and the Celery application.
#
# Importing the Celery app here makes sure it is loaded when Django starts,
# so shared tasks (the escrow reconciler) bind to it.
# =============================================================================

from config.celery import app as celery_app

__all__ = ("celery_app",)
