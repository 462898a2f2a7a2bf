"""
URL configuration for DocuChat backend.
"""
from django.urls import path, include

from config.health import healthz, readyz

urlpatterns = [
    # Health check endpoints
    path('healthz', healthz, name='healthz'),
    path('readyz', readyz, name='readyz'),

    # API routes
    path('api/', include('apps.indexing.urls')),
    path('api/rag/', include('apps.rag.urls')),
]
