"""
Django management command to index documents from the command line.

Usage:
    python manage.py ingest_document report.pdf notes.md --project research
    python manage.py ingest_document data.csv --provider ollama
"""
import asyncio
from pathlib import Path

from django.core.management.base import BaseCommand, CommandError

from apps.indexing.ingestion import IngestionError, ingest
from apps.rag.providers import ProviderType


class Command(BaseCommand):
    help = 'Index one or more documents into the vector store'

    def add_arguments(self, parser):
        parser.add_argument('paths', nargs='+', help='Files to index')
        parser.add_argument(
            '--project',
            default=None,
            help='Project id the documents belong to',
        )
        parser.add_argument(
            '--provider',
            default=ProviderType.LOCAL.value,
            choices=[p.value for p in ProviderType],
            help='Embedding provider (must match the one used for queries)',
        )
        parser.add_argument(
            '--embedding-model',
            default=None,
            help='Embedding model id (provider default if omitted)',
        )

    def handle(self, *args, **options):
        failures = 0

        def report(event):
            self.stdout.write(f'  [{event.stage}] {event.progress}% {event.message or ""}'.rstrip())

        for raw_path in options['paths']:
            path = Path(raw_path)
            self.stdout.write(f'Indexing {path}...')

            try:
                result = asyncio.run(ingest(
                    path,
                    on_progress=report,
                    provider=options['provider'],
                    embedding_model=options['embedding_model'],
                    project_id=options['project'],
                ))
            except IngestionError as e:
                failures += 1
                self.stderr.write(self.style.ERROR(f'Failed to index {path}: {e}'))
                continue

            self.stdout.write(self.style.SUCCESS(
                f'Indexed {result.document_name} as {result.document_id} ({result.chunk_count} chunks)'
            ))

        if failures:
            raise CommandError(f'{failures} document(s) failed to index')
