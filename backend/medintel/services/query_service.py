"""Query orchestration: retrieve, optionally build a timeline, compose a grounded answer."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from medintel.agents.oracle import Oracle, OracleError
from medintel.config import settings
from medintel.models.clinical import QueryAnswer, TimelineEvent
from medintel.models.documents import Document, SearchResult
from medintel.services.embedder import Embedder
from medintel.services.retrieval import RetrievalIndex, format_as_xml_sources
from medintel.services.timeline import TimelineSynthesizer

logger = logging.getLogger(__name__)

INSUFFICIENT_INFORMATION = "insufficient information"

TEMPORAL_KEYWORDS = (
    "trend",
    "over time",
    "history",
    "progression",
    "change",
    "improvement",
    "worse",
)

ANSWER_PROMPT = """\
You are a medical AI assistant analyzing a patient's medical records. \
Answer the question based ONLY on the provided medical records.

Question: {query}

{sources}
{timeline}
Provide an answer that:
1. Directly answers the question
2. References specific documents and dates
3. Highlights any concerning patterns or trends
4. Suggests what information might be missing

If you cannot answer based on the available records, say so clearly.
"""


def is_temporal_query(query: str) -> bool:
    lower = query.lower()
    return any(keyword in lower for keyword in TEMPORAL_KEYWORDS)


def confidence_for(document_count: int) -> float:
    """Monotonic in the number of documents used, capped. Not calibrated."""
    return min(settings.max_confidence, document_count * settings.confidence_per_document)


def medical_context(documents: Sequence[Document]) -> list[str]:
    context: dict[str, None] = {}
    for doc in documents:
        for tag in doc.tags:
            context.setdefault(tag)
        if doc.doctor:
            context.setdefault(f"Dr. {doc.doctor}")
        if doc.hospital:
            context.setdefault(doc.hospital)
    return list(context)


def format_timeline(timeline: Sequence[TimelineEvent] | None) -> str:
    if not timeline:
        return ""
    lines = ["Medical Timeline:"]
    for event in timeline:
        value = f" ({event.value})" if event.value else ""
        lines.append(f"{event.date.isoformat()}: {event.description}{value}")
    return "\n".join(lines) + "\n"


def extractive_answer(results: Sequence[SearchResult]) -> str:
    """Answer built from the retrieved records when the oracle cannot compose one."""
    lines = ["Relevant records found:"]
    for r in results:
        doc = r.document
        summary = doc.summary.strip() or doc.content.strip()[:200]
        lines.append(f"- {doc.name} ({doc.date.isoformat()}): {summary}")
    return "\n".join(lines)


class QueryOrchestrator:
    def __init__(
        self,
        oracle: Oracle,
        embedder: Embedder,
        synthesizer: TimelineSynthesizer,
        timeout: float | None = None,
    ) -> None:
        self.oracle = oracle
        self.embedder = embedder
        self.synthesizer = synthesizer
        self.timeout = timeout if timeout is not None else settings.oracle_timeout_seconds

    async def answer(
        self, index: RetrievalIndex, query: str, k: int | None = None
    ) -> QueryAnswer:
        k = settings.retrieval_top_k if k is None else k
        results = await index.search(query, k, self.embedder)

        if not results:
            logger.info("No relevant documents for %r, skipping oracle", query)
            return QueryAnswer(
                query=query,
                answer=INSUFFICIENT_INFORMATION,
                confidence=0.0,
                sources=[],
            )

        documents = [r.document for r in results]
        timeline = None
        if is_temporal_query(query):
            logger.info("Temporal query, building timeline from %d documents", len(documents))
            timeline = await self.synthesizer.build(documents)

        prompt = ANSWER_PROMPT.format(
            query=query,
            sources=format_as_xml_sources(results),
            timeline=format_timeline(timeline),
        )
        try:
            async with asyncio.timeout(self.timeout):
                text = await self.oracle.generate_text(prompt)
        except OracleError as e:
            logger.info("Oracle answer unavailable (%s), returning extractive answer", e.code)
            text = extractive_answer(results)
        except TimeoutError:
            logger.warning("Oracle answer timed out, returning extractive answer")
            text = extractive_answer(results)
        except Exception:
            logger.exception("Oracle answer failed, returning extractive answer")
            text = extractive_answer(results)

        return QueryAnswer(
            query=query,
            answer=text,
            confidence=confidence_for(len(documents)),
            sources=[doc.id for doc in documents],
            medical_context=medical_context(documents),
            timeline=timeline,
        )
