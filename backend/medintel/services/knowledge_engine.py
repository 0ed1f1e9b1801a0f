"""Caller-facing facade over the medical knowledge engine.

The engine holds collaborators only. All patient data lives in the
``RetrievalIndex`` the caller creates per session and passes in.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence

from medintel.agents.oracle import NullOracle, Oracle
from medintel.config import settings
from medintel.models.clinical import (
    AnalysisResult,
    ClinicalInsights,
    QueryAnswer,
    TimelineEvent,
    TrendPoint,
)
from medintel.models.documents import Document, DocumentRecord, SearchResult
from medintel.services.chunker import chunk_document
from medintel.services.clinical_reasoning import (
    ClinicalReasoningEngine,
    merge_series,
    series_from_documents,
    series_from_timeline,
)
from medintel.services.embedder import Embedder
from medintel.services.knowledge_base import ReferenceStore, default_store
from medintel.services.query_service import QueryOrchestrator
from medintel.services.retrieval import DuplicateDocumentError, RetrievalIndex
from medintel.services.timeline import TimelineSynthesizer

logger = logging.getLogger(__name__)


class InvalidDocumentError(Exception):
    """Raised when a caller passes a structurally malformed document record."""

    def __init__(self, message: str) -> None:
        self.code = "INVALID_DOCUMENT"
        self.message = message
        super().__init__(message)


class MedicalKnowledgeEngine:
    def __init__(
        self,
        oracle: Oracle | None = None,
        store: ReferenceStore = default_store,
    ) -> None:
        self.oracle = oracle if oracle is not None else NullOracle()
        self.store = store
        self.embedder = Embedder(self.oracle)
        self.synthesizer = TimelineSynthesizer(self.oracle)
        self.reasoning = ClinicalReasoningEngine(self.oracle, store)
        self.orchestrator = QueryOrchestrator(self.oracle, self.embedder, self.synthesizer)

    @staticmethod
    def new_corpus() -> RetrievalIndex:
        return RetrievalIndex()

    # --- Ingestion ---

    async def build_document(self, record: DocumentRecord) -> Document:
        """Chunk and embed a record. Fails fast on a missing id."""
        if record.id is None or not record.id.strip():
            raise InvalidDocumentError(f"Document {record.name!r} has no id")

        text = record.content or record.summary
        chunks = chunk_document(record.id, text)
        full_text = f"{record.name} {record.summary} {record.content}"
        vectors = await self.embedder.embed_many([full_text, *(c.content for c in chunks)])

        return Document(
            **record.model_dump(),
            embedding=vectors[0],
            chunks=[
                chunk.model_copy(update={"embedding": vector})
                for chunk, vector in zip(chunks, vectors[1:], strict=True)
            ],
        )

    async def ingest(self, corpus: RetrievalIndex, record: DocumentRecord) -> str:
        document = await self.build_document(record)
        corpus.add(document)
        logger.info(
            "Ingested %r (%s, %d chunks)", document.id, document.category, len(document.chunks)
        )
        return document.id

    async def ingest_many(
        self, corpus: RetrievalIndex, records: Sequence[DocumentRecord]
    ) -> list[str]:
        """Build documents concurrently, then add them in input order.

        Ids are checked against the corpus and the batch first, so a rejected
        batch leaves the corpus unchanged.
        """
        seen: set[str] = set()
        for record in records:
            if record.id is None or not record.id.strip():
                raise InvalidDocumentError(f"Document {record.name!r} has no id")
            if record.id in corpus or record.id in seen:
                raise DuplicateDocumentError(record.id)
            seen.add(record.id)

        documents = await asyncio.gather(*(self.build_document(r) for r in records))
        for document in documents:
            corpus.add(document)
        logger.info("Ingested %d documents (corpus size %d)", len(documents), len(corpus))
        return [doc.id for doc in documents]

    # --- Caller operations ---

    async def search(
        self, corpus: RetrievalIndex, query: str, k: int | None = None
    ) -> list[SearchResult]:
        k = settings.retrieval_top_k if k is None else k
        return await corpus.search(query, k, self.embedder)

    async def build_timeline(
        self, corpus: RetrievalIndex, document_ids: Sequence[str] | None = None
    ) -> list[TimelineEvent]:
        """Timeline over the given documents (all of them when ids is None).

        Unknown ids are skipped.
        """
        if document_ids is None:
            documents = corpus.documents
        else:
            documents = [doc for i in document_ids if (doc := corpus.get(i)) is not None]
        return await self.synthesizer.build(documents)

    async def analyze(
        self,
        medications: Sequence[str],
        conditions: Sequence[str],
        lab_series: Mapping[str, Sequence[TrendPoint]],
        gender: str | None = None,
    ) -> AnalysisResult:
        return await self.reasoning.analyze(medications, conditions, lab_series, gender)

    async def answer(
        self, corpus: RetrievalIndex, query: str, k: int | None = None
    ) -> QueryAnswer:
        return await self.orchestrator.answer(corpus, query, k)

    async def clinical_insights(
        self, corpus: RetrievalIndex, gender: str | None = None
    ) -> ClinicalInsights:
        """Full analysis derived from the corpus alone."""
        documents = corpus.documents
        timeline, medication_sources, conditions = await asyncio.gather(
            self.synthesizer.build(documents),
            self.reasoning.detect_term_sources("medications", documents),
            self.reasoning.detect_terms("conditions", documents),
        )
        medications = list(medication_sources)
        lab_series = merge_series(
            series_from_documents(documents, self.store),
            series_from_timeline(timeline, self.store),
        )
        analysis, treatment_patterns = await asyncio.gather(
            self.reasoning.analyze(
                medications,
                conditions,
                lab_series,
                gender,
                medication_sources=medication_sources,
            ),
            self.reasoning.treatment_patterns(conditions, documents),
        )
        return ClinicalInsights(
            medications=medications,
            conditions=conditions,
            timeline=timeline,
            lab_series=lab_series,
            treatment_patterns=treatment_patterns,
            analysis=analysis,
        )


if __name__ == "__main__":
    import datetime
    import json

    records = [
        DocumentRecord(
            id="rx-1",
            name="Cardiology prescription",
            category="prescription",
            date=datetime.date(2024, 1, 10),
            content="Medication: Warfarin 5mg once daily\nAspirin 81mg once daily",
            summary="Warfarin and aspirin prescribed",
            doctor="Patel",
            tags=["warfarin", "aspirin"],
        ),
        DocumentRecord(
            id="lab-1",
            name="Renal panel",
            category="lab_report",
            date=datetime.date(2024, 2, 1),
            content="Blood test results\neGFR: 62\nCreatinine: 1.3",
            summary="eGFR 62, creatinine 1.3",
        ),
        DocumentRecord(
            id="lab-2",
            name="Renal panel follow-up",
            category="lab_report",
            date=datetime.date(2024, 5, 1),
            content="Blood test results\neGFR: 40\nCreatinine: 1.9",
            summary="eGFR 40, creatinine 1.9",
        ),
    ]

    async def main() -> None:
        engine = MedicalKnowledgeEngine()
        corpus = engine.new_corpus()
        await engine.ingest_many(corpus, records)
        insights = await engine.clinical_insights(corpus)
        print(json.dumps(insights.model_dump(), indent=2, default=str))

    asyncio.run(main())
