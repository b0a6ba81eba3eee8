"""
WSGI config for the escrow engine.

Exposes the WSGI callable as a module-level variable named `application`.
It serves the Django admin; escrow operations themselves are invoked
in-process by the marketplace API layer.

For more information on this file, see:
https://docs.djangoproject.com/en/5.2/howto/deployment/wsgi/
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

application = get_wsgi_application()
