"""
Document indexing app.

Provides:
- Text extraction (text, markdown, PDF pages, CSV rows)
- Deterministic chunking
- The ingest pipeline writing embeddings to the vector store
"""
