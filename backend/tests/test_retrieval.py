"""Unit tests for retrieval: cosine similarity, ranking, XML formatting."""

from __future__ import annotations

import datetime
import math

import pytest

from medintel.agents.oracle import NullOracle
from medintel.models.documents import Chunk, Document, SearchResult
from medintel.services.embedder import Embedder, hashing_embedding
from medintel.services.retrieval import (
    DuplicateDocumentError,
    RetrievalIndex,
    cosine_similarity,
    format_as_xml_sources,
)

# --- Helpers ---


def _make_document(
    id: str = "doc-1",
    embedding: list[float] | None = None,
    name: str = "Test Document",
    summary: str = "Sample summary",
    chunks: list[Chunk] | None = None,
    doctor: str | None = None,
) -> Document:
    return Document(
        id=id,
        name=name,
        category="lab_report",
        date=datetime.date(2024, 1, 15),
        content="",
        summary=summary,
        doctor=doctor,
        embedding=embedding if embedding is not None else [1.0, 0.0],
        chunks=chunks or [],
    )


def _make_chunk(document_id: str, index: int, embedding: list[float]) -> Chunk:
    return Chunk(
        id=f"{document_id}_chunk_{index}",
        document_id=document_id,
        content=f"chunk {index}",
        chunk_type="general",
        embedding=embedding,
        index=index,
    )


class TestCosineSimilarity:
    def test_self_similarity_is_one(self):
        v = [0.3, -1.2, 4.0]
        assert math.isclose(cosine_similarity(v, v), 1.0)

    def test_symmetric(self):
        a, b = [1.0, 2.0, 3.0], [-2.0, 0.5, 1.0]
        assert cosine_similarity(a, b) == cosine_similarity(b, a)

    def test_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0

    def test_opposite(self):
        assert math.isclose(cosine_similarity([1.0, 1.0], [-1.0, -1.0]), -1.0)

    def test_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [0.0, 0.0]) == 0.0

    def test_length_mismatch(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0


class TestRetrievalIndex:
    def test_add_and_lookup(self):
        index = RetrievalIndex()
        index.add(_make_document("a"))
        index.add(_make_document("b"))
        assert len(index) == 2
        assert "a" in index
        assert "missing" not in index
        assert index.get("b").id == "b"
        assert [d.id for d in index] == ["a", "b"]

    def test_duplicate_id_rejected(self):
        index = RetrievalIndex()
        index.add(_make_document("a"))
        with pytest.raises(DuplicateDocumentError) as exc_info:
            index.add(_make_document("a"))
        assert exc_info.value.code == "DUPLICATE_DOCUMENT"
        assert len(index) == 1

    def test_chunks_collected_in_insertion_order(self):
        index = RetrievalIndex()
        index.add(_make_document("a", chunks=[_make_chunk("a", 0, [1.0, 0.0])]))
        index.add(
            _make_document(
                "b", chunks=[_make_chunk("b", 0, [0.0, 1.0]), _make_chunk("b", 1, [1.0, 1.0])]
            )
        )
        assert [c.id for c in index.chunks] == ["a_chunk_0", "b_chunk_0", "b_chunk_1"]


class TestRank:
    def test_orders_by_similarity(self):
        index = RetrievalIndex()
        index.add(_make_document("far", embedding=[0.0, 1.0]))
        index.add(_make_document("near", embedding=[1.0, 0.1]))
        index.add(_make_document("exact", embedding=[1.0, 0.0]))
        results = index.rank([1.0, 0.0], k=3)
        assert [r.document.id for r in results] == ["exact", "near", "far"]
        assert [r.rank for r in results] == [1, 2, 3]

    def test_scores_non_increasing(self):
        index = RetrievalIndex()
        for i, vec in enumerate([[0.2, 0.9], [0.9, 0.2], [0.5, 0.5], [-1.0, 0.0]]):
            index.add(_make_document(f"d{i}", embedding=vec))
        scores = [r.score for r in index.rank([1.0, 0.0], k=4)]
        assert scores == sorted(scores, reverse=True)

    def test_ties_keep_insertion_order(self):
        index = RetrievalIndex()
        for doc_id in ("first", "second", "third"):
            index.add(_make_document(doc_id, embedding=[1.0, 0.0]))
        results = index.rank([1.0, 0.0], k=3)
        assert [r.document.id for r in results] == ["first", "second", "third"]

    def test_k_limits_results(self):
        index = RetrievalIndex()
        for i in range(5):
            index.add(_make_document(f"d{i}"))
        assert len(index.rank([1.0, 0.0], k=2)) == 2
        assert len(index.rank([1.0, 0.0], k=10)) == 5

    def test_non_positive_k(self):
        index = RetrievalIndex()
        index.add(_make_document("a"))
        assert index.rank([1.0, 0.0], k=0) == []
        assert index.rank([1.0, 0.0], k=-1) == []

    def test_empty_index(self):
        assert RetrievalIndex().rank([1.0, 0.0], k=5) == []

    def test_rank_chunks(self):
        index = RetrievalIndex()
        index.add(
            _make_document(
                "a", chunks=[_make_chunk("a", 0, [0.0, 1.0]), _make_chunk("a", 1, [1.0, 0.0])]
            )
        )
        results = index.rank_chunks([1.0, 0.0], k=1)
        assert [r.chunk.id for r in results] == ["a_chunk_1"]


class TestSearch:
    async def test_search_embeds_query(self):
        embedder = Embedder(NullOracle())
        index = RetrievalIndex()
        index.add(_make_document("kidney", embedding=hashing_embedding("egfr creatinine kidney")))
        index.add(_make_document("heart", embedding=hashing_embedding("heart rate pulse")))
        results = await index.search("kidney egfr", 2, embedder)
        assert results[0].document.id == "kidney"

    async def test_search_empty_index(self, mocker):
        embedder = Embedder(NullOracle())
        spy = mocker.spy(embedder, "embed")
        assert await RetrievalIndex().search("anything", 5, embedder) == []
        spy.assert_not_called()

    async def test_search_chunks(self):
        embedder = Embedder(NullOracle())
        index = RetrievalIndex()
        index.add(
            _make_document(
                "a",
                chunks=[
                    _make_chunk("a", 0, hashing_embedding("warfarin 5mg")),
                    _make_chunk("a", 1, hashing_embedding("egfr 40")),
                ],
            )
        )
        results = await index.search_chunks("warfarin", 1, embedder)
        assert results[0].chunk.id == "a_chunk_0"


class TestFormatAsXmlSources:
    def test_empty(self):
        assert format_as_xml_sources([]) == (
            "<medical_records>No relevant records found.</medical_records>"
        )

    def test_formats_sources(self):
        doc = _make_document(
            "rx-1",
            name="Cardiology prescription",
            summary="Warfarin 5mg daily",
            doctor="Patel",
        )
        xml = format_as_xml_sources([SearchResult(document=doc, score=0.876, rank=1)])
        assert xml.startswith("<medical_records>")
        assert xml.endswith("</medical_records>")
        assert 'id="1"' in xml
        assert 'document="Cardiology prescription"' in xml
        assert 'date="2024-01-15"' in xml
        assert 'doctor="Patel"' in xml
        assert 'hospital="Unknown"' in xml
        assert 'score="0.88"' in xml
        assert "Warfarin 5mg daily" in xml
