"""Unit tests for the engine facade: ingestion, timeline selection, insights."""

from __future__ import annotations

import datetime

import pytest
from conftest import FakeOracle, make_record

from medintel.services.embedder import HASH_EMBEDDING_DIMENSIONS, hashing_embedding
from medintel.services.knowledge_engine import InvalidDocumentError, MedicalKnowledgeEngine
from medintel.services.retrieval import DuplicateDocumentError


class TestIngest:
    async def test_ingest_builds_chunks_and_embeddings(self, engine):
        corpus = engine.new_corpus()
        record = make_record(
            id="rx-1",
            name="Prescription",
            category="prescription",
            content="Medication: Warfarin 5mg\nDiagnosis: atrial fibrillation",
            summary="Warfarin started",
        )
        assert await engine.ingest(corpus, record) == "rx-1"

        doc = corpus.get("rx-1")
        assert doc.embedding == hashing_embedding(
            "Prescription Warfarin started Medication: Warfarin 5mg\nDiagnosis: atrial fibrillation"
        )
        assert [c.chunk_type for c in doc.chunks] == ["medication", "diagnosis"]
        assert all(len(c.embedding) == 384 for c in doc.chunks)
        assert [c.id for c in corpus.chunks] == ["rx-1_chunk_0", "rx-1_chunk_1"]

    async def test_summary_used_when_no_content(self, engine):
        corpus = engine.new_corpus()
        await engine.ingest(corpus, make_record(content="", summary="Diagnosis: asthma"))
        assert corpus.get("doc-1").chunks[0].content == "Diagnosis: asthma"

    async def test_empty_text_has_no_chunks(self, engine):
        corpus = engine.new_corpus()
        await engine.ingest(corpus, make_record(content="", summary=""))
        assert corpus.get("doc-1").chunks == []

    @pytest.mark.parametrize("bad_id", [None, "", "   "])
    async def test_missing_id_rejected(self, engine, bad_id):
        corpus = engine.new_corpus()
        with pytest.raises(InvalidDocumentError) as exc_info:
            await engine.ingest(corpus, make_record(id=bad_id))
        assert exc_info.value.code == "INVALID_DOCUMENT"
        assert len(corpus) == 0

    async def test_duplicate_rejected(self, engine):
        corpus = engine.new_corpus()
        await engine.ingest(corpus, make_record(id="a"))
        with pytest.raises(DuplicateDocumentError):
            await engine.ingest(corpus, make_record(id="a"))

    async def test_ingest_many_keeps_order(self, engine, sample_records):
        corpus = engine.new_corpus()
        ids = await engine.ingest_many(corpus, sample_records)
        assert ids == ["rx-1", "lab-1", "bill-1"]
        assert [d.id for d in corpus] == ids

    async def test_corpora_are_independent(self, engine, sample_records):
        first, second = engine.new_corpus(), engine.new_corpus()
        await engine.ingest_many(first, sample_records)
        assert len(second) == 0

    async def test_ingest_many_rejects_existing_id_atomically(self, sample_records):
        oracle = FakeOracle()
        engine = MedicalKnowledgeEngine(oracle=oracle)
        corpus = engine.new_corpus()
        await engine.ingest(corpus, make_record(id="lab-1"))
        oracle.calls.clear()

        with pytest.raises(DuplicateDocumentError):
            await engine.ingest_many(corpus, sample_records)

        assert [d.id for d in corpus] == ["lab-1"]
        assert oracle.calls == []

    async def test_ingest_many_rejects_repeated_id_in_batch(self, engine):
        corpus = engine.new_corpus()
        with pytest.raises(DuplicateDocumentError):
            await engine.ingest_many(corpus, [make_record(id="a"), make_record(id="a")])
        assert len(corpus) == 0

    async def test_ingest_many_rejects_missing_id_atomically(self, engine, sample_records):
        corpus = engine.new_corpus()
        with pytest.raises(InvalidDocumentError):
            await engine.ingest_many(corpus, [*sample_records, make_record(id=None)])
        assert len(corpus) == 0

    async def test_fallback_width_is_fixed(self, engine):
        assert engine.embedder.dimensions == HASH_EMBEDDING_DIMENSIONS == 384

    async def test_oracle_embeddings_used(self):
        engine = MedicalKnowledgeEngine(oracle=FakeOracle(embedding=[0.5] * 384))
        corpus = engine.new_corpus()
        await engine.ingest(corpus, make_record(content="Diagnosis: asthma"))
        assert corpus.get("doc-1").embedding == [0.5] * 384


class TestSearchAndTimeline:
    async def test_search(self, engine, sample_records):
        corpus = engine.new_corpus()
        await engine.ingest_many(corpus, sample_records)
        results = await engine.search(corpus, "invoice consultation", k=1)
        assert [r.document.id for r in results] == ["bill-1"]

    async def test_timeline_all_documents(self, engine, sample_records):
        corpus = engine.new_corpus()
        await engine.ingest_many(corpus, sample_records)
        events = await engine.build_timeline(corpus)
        assert [e.document_id for e in events] == ["rx-1", "lab-1", "bill-1"]
        assert [e.event_type for e in events] == ["medication", "lab_result", "visit"]

    async def test_timeline_selected_ids_skips_unknown(self, engine, sample_records):
        corpus = engine.new_corpus()
        await engine.ingest_many(corpus, sample_records)
        events = await engine.build_timeline(corpus, ["bill-1", "missing", "rx-1"])
        assert [e.document_id for e in events] == ["rx-1", "bill-1"]

    async def test_timeline_empty_selection(self, engine, sample_records):
        corpus = engine.new_corpus()
        await engine.ingest_many(corpus, sample_records)
        assert await engine.build_timeline(corpus, []) == []


class TestClinicalInsights:
    async def test_insights_without_oracle(self, engine, sample_records):
        corpus = engine.new_corpus()
        await engine.ingest_many(
            corpus,
            [
                *sample_records,
                make_record(
                    id="lab-2",
                    name="Renal follow-up",
                    category="lab_report",
                    date=datetime.date(2024, 5, 1),
                    content="eGFR: 40\nCreatinine: 1.9",
                ),
            ],
        )
        insights = await engine.clinical_insights(corpus)

        assert insights.medications == ["warfarin", "aspirin"]
        assert insights.conditions == ["kidney function"]
        assert [p.value for p in insights.lab_series["eGFR"]] == [62, 40]
        assert len(insights.timeline) == 4

        analysis = insights.analysis
        assert [i.severity for i in analysis.interactions] == ["severe"]
        egfr = next(t for t in analysis.trends if t.parameter == "eGFR")
        assert egfr.trend == "declining"
        assert egfr.risk_level == "critical"
        assert analysis.alerts[0].severity == "critical"
        assert "Bleeding risk due to anticoagulation" in analysis.risk_factors

        interaction_alert = next(a for a in analysis.alerts if a.alert_type == "drug_interaction")
        assert interaction_alert.document_references == ["rx-1"]
        egfr_alert = next(
            a
            for a in analysis.alerts
            if a.alert_type == "vital_trend" and a.message.startswith("eGFR")
        )
        assert egfr_alert.document_references == ["lab-1", "lab-2"]
        assert any(a.alert_type == "lab_abnormal" for a in analysis.alerts)

        assert [p.condition for p in insights.treatment_patterns] == ["kidney function"]
        assert insights.treatment_patterns[0].document_references == ["lab-1"]
        assert insights.treatment_patterns[0].effectiveness == "unknown"

    async def test_insights_empty_corpus(self, engine):
        insights = await engine.clinical_insights(engine.new_corpus())
        assert insights.medications == []
        assert insights.timeline == []
        assert insights.lab_series == {}
        assert insights.analysis.alerts == []
        assert insights.treatment_patterns == []
