"""
RAG (Retrieval Augmented Generation) app.

Provides:
- Embedding and generation providers (local, LM Studio, Ollama)
- Project-scoped vector store with blob persistence
- Prompting with citations and a thinking/answer splitter
- The query orchestrator
"""
