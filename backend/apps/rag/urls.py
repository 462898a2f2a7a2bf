"""
RAG URL routing.
"""
from django.urls import path

from apps.rag.views import AskView, ProviderStatusView, RetrieveView, VerifyView

urlpatterns = [
    path('ask', AskView.as_view(), name='rag-ask'),
    path('retrieve', RetrieveView.as_view(), name='rag-retrieve'),
    path('verify', VerifyView.as_view(), name='rag-verify'),
    path('providers/<str:provider>/status', ProviderStatusView.as_view(), name='rag-provider-status'),
]
