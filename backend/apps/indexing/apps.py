from django.apps import AppConfig


class IndexingConfig(AppConfig):
    name = 'apps.indexing'
    verbose_name = 'Document Indexing Pipeline'
