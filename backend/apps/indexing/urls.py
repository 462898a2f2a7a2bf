"""
URL configuration for the indexing app.
"""
from django.urls import path

from apps.indexing import views

urlpatterns = [
    path('docs/ingest', views.IngestView.as_view(), name='docs-ingest'),
    path('docs/<str:document_id>', views.DocumentView.as_view(), name='docs-detail'),
    path('projects/<str:project_id>', views.ProjectView.as_view(), name='projects-detail'),
]
