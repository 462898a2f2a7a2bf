"""
Prompt construction for RAG answers.

Two templates are available:
- GENERIC: a numbered context block followed by the question
- STRUCTURED: each source wrapped in explicit <source> delimiters, for
  models that follow structured sources better

Which one a model gets is decided by a TemplatePolicy. The default
policy matches the model id against STRUCTURED_SOURCE_MODEL_PATTERNS.
"""
import logging
import re
from enum import Enum
from typing import Callable, Optional, Sequence

from django.conf import settings

from apps.rag.retrieval import rank_results, source_label, unique_sources
from apps.rag.vector_store import QueryResult

logger = logging.getLogger(__name__)


class PromptTemplate(str, Enum):
    GENERIC = "generic"
    STRUCTURED = "structured"


TemplatePolicy = Callable[[str], PromptTemplate]


GENERIC_PROMPT = """You are a helpful document assistant. Answer the question based ONLY on the document context below.

STRICT RULES:
1. Use ONLY information from the provided context.
2. If the answer cannot be found in the context, say so plainly.
3. When citing information, use bracket notation like [1], [2] to reference the context blocks.
4. Be concise and factual.

CONTEXT:
{context}

SOURCES:
{sources}

QUESTION: {question}

ANSWER:"""


STRUCTURED_PROMPT = """You are a helpful document assistant. Answer the question using ONLY the sources below.
Each source is enclosed between <source id="N" ref="..."> and </source>. Cite sources by id, like [1].
If the sources do not contain the answer, say so plainly.

{context}

Available sources:
{sources}

Question: {question}

Answer:"""


CONVERSATION_PROMPT = """You are a helpful assistant. No documents have been uploaded yet, so answer from general knowledge and mention that uploading documents lets you answer questions about them.

Question: {question}

Answer:"""


class PatternTemplatePolicy:
    """
    Chooses STRUCTURED for model ids matching any regex pattern.

    Args:
        patterns: Case-insensitive regexes (STRUCTURED_SOURCE_MODEL_PATTERNS if None)
    """

    def __init__(self, patterns: Optional[Sequence[str]] = None):
        if patterns is None:
            patterns = getattr(settings, 'STRUCTURED_SOURCE_MODEL_PATTERNS', [])
        self.patterns = [re.compile(p, re.IGNORECASE) for p in patterns]

    def __call__(self, model_id: str) -> PromptTemplate:
        model_id = model_id or ""
        if any(p.search(model_id) for p in self.patterns):
            return PromptTemplate.STRUCTURED
        return PromptTemplate.GENERIC


def _format_sources(results: Sequence[QueryResult]) -> str:
    return "\n".join(f"- {label}" for label in unique_sources(results))


def build_generic_prompt(question: str, results: Sequence[QueryResult]) -> str:
    """
    Format:
    [1] (report.pdf (page 2)): The text content here...
    [2] (notes.md): More content...
    """
    blocks = [
        f"[{i}] ({source_label(result.metadata)}): {result.text}"
        for i, result in enumerate(results, 1)
    ]
    return GENERIC_PROMPT.format(
        context="\n\n".join(blocks),
        sources=_format_sources(results),
        question=question,
    )


def _attribute(value: str) -> str:
    # Keeps a document name from closing the ref="..." attribute early
    return value.replace('"', "'").replace('<', '(').replace('>', ')')


def build_structured_prompt(question: str, results: Sequence[QueryResult]) -> str:
    blocks = [
        f'<source id="{i}" ref="{_attribute(source_label(result.metadata))}">\n{result.text}\n</source>'
        for i, result in enumerate(results, 1)
    ]
    return STRUCTURED_PROMPT.format(
        context="\n\n".join(blocks),
        sources=_format_sources(results),
        question=question,
    )


def build_prompt(
    question: str,
    results: Sequence[QueryResult],
    template: PromptTemplate = PromptTemplate.GENERIC,
) -> str:
    """
    Build the full prompt for retrieval results.

    Results are ranked by descending score here, whatever order they
    arrive in, so [1] is always the best match.

    Args:
        question: Normalized user question (inserted verbatim)
        results: Retrieved chunks
        template: Which template to use

    Returns:
        Prompt text
    """
    results = rank_results(results)
    if template is PromptTemplate.STRUCTURED:
        prompt = build_structured_prompt(question, results)
    else:
        prompt = build_generic_prompt(question, results)

    logger.debug(f"Built {template.value} prompt: {len(results)} sources, {len(prompt)} chars")
    return prompt


def build_conversation_prompt(question: str) -> str:
    """Prompt used when the user has no documents at all."""
    return CONVERSATION_PROMPT.format(question=question)
