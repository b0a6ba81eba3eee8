"""
URL configuration for the escrow engine.

The escrow operations are consumed in-process by the marketplace API layer,
so the only routed surface here is the Django admin used by support staff to
inspect escrow records and provider calls.

URL Structure:
    /admin/    - Django admin interface
"""

from django.contrib import admin
from django.urls import path

urlpatterns = [
    path("admin/", admin.site.urls),
]
