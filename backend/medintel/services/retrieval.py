"""Retrieval index: the per-session document corpus and cosine-similarity search."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterator, Sequence

from medintel.models.documents import (
    Chunk,
    ChunkSearchResult,
    Document,
    SearchResult,
)
from medintel.services.embedder import Embedder

logger = logging.getLogger(__name__)


class DuplicateDocumentError(Exception):
    """Raised when a document id is added to a corpus twice."""

    def __init__(self, document_id: str) -> None:
        self.code = "DUPLICATE_DOCUMENT"
        self.message = f"Document {document_id!r} is already in the corpus"
        super().__init__(self.message)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """dot(a, b) / (|a| |b|); 0 for mismatched lengths or a zero vector."""
    if len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class RetrievalIndex:
    """Ordered in-memory corpus with document- and chunk-level embeddings.

    One index belongs to one session/request. Insertion order is kept and
    used to break similarity ties.
    """

    def __init__(self) -> None:
        self._documents: dict[str, Document] = {}
        self._chunks: list[Chunk] = []

    def __len__(self) -> int:
        return len(self._documents)

    def __iter__(self) -> Iterator[Document]:
        return iter(self._documents.values())

    def __contains__(self, document_id: object) -> bool:
        return document_id in self._documents

    @property
    def documents(self) -> list[Document]:
        return list(self._documents.values())

    @property
    def chunks(self) -> list[Chunk]:
        return list(self._chunks)

    def get(self, document_id: str) -> Document | None:
        return self._documents.get(document_id)

    def add(self, document: Document) -> None:
        if document.id in self._documents:
            raise DuplicateDocumentError(document.id)
        self._documents[document.id] = document
        self._chunks.extend(document.chunks)
        logger.debug(
            "Indexed document %r (%d chunks, corpus size %d)",
            document.id,
            len(document.chunks),
            len(self._documents),
        )

    # --- Search ---

    def rank(self, query_vector: Sequence[float], k: int) -> list[SearchResult]:
        """Top-k documents by cosine similarity; ties keep insertion order."""
        if k <= 0 or not self._documents:
            return []
        scored = [
            (cosine_similarity(query_vector, doc.embedding), doc)
            for doc in self._documents.values()
        ]
        # sorted() is stable, so equal scores stay in insertion order.
        scored = sorted(scored, key=lambda item: item[0], reverse=True)[:k]
        return [
            SearchResult(document=doc, score=score, rank=idx + 1)
            for idx, (score, doc) in enumerate(scored)
        ]

    def rank_chunks(self, query_vector: Sequence[float], k: int) -> list[ChunkSearchResult]:
        """Top-k chunks by cosine similarity; ties keep insertion order."""
        if k <= 0 or not self._chunks:
            return []
        scored = [(cosine_similarity(query_vector, c.embedding), c) for c in self._chunks]
        scored = sorted(scored, key=lambda item: item[0], reverse=True)[:k]
        return [
            ChunkSearchResult(chunk=chunk, score=score, rank=idx + 1)
            for idx, (score, chunk) in enumerate(scored)
        ]

    async def search(self, query: str, k: int, embedder: Embedder) -> list[SearchResult]:
        """Embed the query and return the top-k documents."""
        logger.info("Search: query=%r k=%d corpus=%d", query, k, len(self._documents))
        if k <= 0 or not self._documents:
            return []
        query_vector = await embedder.embed(query)
        results = self.rank(query_vector, k)
        for r in results:
            logger.debug(
                "  Result [%d] score=%.3f doc=%r (%s)",
                r.rank,
                r.score,
                r.document.name,
                r.document.category,
            )
        return results

    async def search_chunks(
        self, query: str, k: int, embedder: Embedder
    ) -> list[ChunkSearchResult]:
        """Embed the query and return the top-k chunks across all documents."""
        logger.info("Chunk search: query=%r k=%d chunks=%d", query, k, len(self._chunks))
        if k <= 0 or not self._chunks:
            return []
        query_vector = await embedder.embed(query)
        return self.rank_chunks(query_vector, k)


def format_as_xml_sources(results: list[SearchResult]) -> str:
    """Format retrieved documents as XML grounding context for the oracle."""
    if not results:
        return "<medical_records>No relevant records found.</medical_records>"

    lines = ["<medical_records>"]
    for r in results:
        doc = r.document
        lines.append(
            f'  <source id="{r.rank}" '
            f'document="{doc.name}" '
            f'date="{doc.date.isoformat()}" '
            f'doctor="{doc.doctor or "Unknown"}" '
            f'hospital="{doc.hospital or "Unknown"}" '
            f'score="{r.score:.2f}">'
        )
        lines.append(f"    {doc.summary or doc.content}")
        lines.append("  </source>")
    lines.append("</medical_records>")
    return "\n".join(lines)
