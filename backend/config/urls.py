"""
URL configuration for the DocChat backend.
"""
from django.urls import path, include

from apps.store.health import healthz, readyz


urlpatterns = [
    # Health check endpoints (no auth)
    path('healthz', healthz, name='healthz'),
    path('readyz', readyz, name='readyz'),

    # API routes
    path('', include('apps.rag.urls')),
    path('api/docs/', include('apps.docs.urls')),
]
