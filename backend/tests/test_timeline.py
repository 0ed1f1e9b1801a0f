"""Unit tests for timeline synthesis: oracle events, fallbacks, ordering."""

from __future__ import annotations

import asyncio
import datetime

from conftest import FakeOracle

from medintel.agents.oracle import NullOracle
from medintel.models.clinical import TimelineEvent
from medintel.models.documents import Document
from medintel.services.timeline import (
    TimelineSynthesizer,
    event_type_for,
    fallback_event,
    group_by_date,
    merge_events,
)

# --- Helpers ---


def _make_document(
    id: str = "doc-1",
    category: str = "other",
    date: datetime.date = datetime.date(2024, 3, 1),
    content: str = "",
    summary: str = "",
    name: str = "Visit note",
) -> Document:
    return Document(
        id=id,
        name=name,
        category=category,
        date=date,
        content=content,
        summary=summary,
        doctor="Patel",
        hospital="City Hospital",
        embedding=[],
    )


def _make_event(date: datetime.date, description: str = "event", document_id: str = "d"):
    return TimelineEvent(
        date=date, description=description, event_type="visit", document_id=document_id
    )


class TestFallbackEvent:
    def test_category_mapping(self):
        assert event_type_for("prescription") == "medication"
        assert event_type_for("lab_report") == "lab_result"
        assert event_type_for("test_report") == "lab_result"
        assert event_type_for("bill") == "visit"
        assert event_type_for("other") == "visit"

    def test_uses_summary(self):
        doc = _make_document(category="prescription", summary="Warfarin started")
        event = fallback_event(doc)
        assert event.description == "Warfarin started"
        assert event.event_type == "medication"
        assert event.date == doc.date
        assert event.document_id == "doc-1"
        assert event.doctor == "Patel"

    def test_without_summary(self):
        event = fallback_event(_make_document(summary="", name="Invoice"))
        assert event.description == "Document: Invoice"


class TestMergeAndGroup:
    def test_merge_sorts_ascending_and_is_stable(self):
        d1, d2 = datetime.date(2024, 1, 1), datetime.date(2024, 2, 1)
        merged = merge_events(
            [
                [_make_event(d2, "b1"), _make_event(d1, "a1")],
                [_make_event(d2, "b2"), _make_event(d1, "a2")],
            ]
        )
        assert [e.description for e in merged] == ["a1", "a2", "b1", "b2"]

    def test_group_by_date(self):
        d1, d2 = datetime.date(2024, 1, 1), datetime.date(2024, 2, 1)
        days = group_by_date([_make_event(d2, "x"), _make_event(d1, "y"), _make_event(d2, "z")])
        assert [d.date for d in days] == [d1, d2]
        assert [e.description for e in days[1].events] == ["x", "z"]

    def test_group_empty(self):
        assert group_by_date([]) == []


class TestTimelineSynthesizer:
    async def test_oracle_events(self):
        oracle = FakeOracle(
            events={
                "Glucose": {
                    "events": [
                        {"date": "2024-03-02", "description": "Fasting glucose", "type": "lab_result", "value": "130 mg/dL"},
                        {"description": "Follow-up visit", "type": "visit"},
                    ]
                }
            }
        )
        doc = _make_document(category="lab_report", content="Glucose 130 mg/dL")
        events = await TimelineSynthesizer(oracle).extract_events(doc)
        assert [e.description for e in events] == ["Fasting glucose", "Follow-up visit"]
        assert events[0].value == "130 mg/dL"
        assert events[0].date == datetime.date(2024, 3, 2)
        # Undated events take the document date
        assert events[1].date == doc.date
        assert all(e.document_id == "doc-1" and e.hospital == "City Hospital" for e in events)

    async def test_free_text_json(self):
        raw = 'Here are the events:\n```json\n[{"event": "BP check", "type": "vital_signs", "value": "140/90"}]\n```'
        oracle = FakeOracle(events={"BP": raw})
        events = await TimelineSynthesizer(oracle).extract_events(_make_document(content="BP 140/90"))
        assert len(events) == 1
        assert events[0].description == "BP check"
        assert events[0].event_type == "vital_signs"

    async def test_malformed_output_falls_back(self):
        oracle = FakeOracle(events={"note": "not json at all"})
        doc = _make_document(content="note", summary="Clinic visit")
        events = await TimelineSynthesizer(oracle).extract_events(doc)
        assert events == [fallback_event(doc)]

    async def test_invalid_event_type_falls_back(self):
        oracle = FakeOracle(events={"note": [{"description": "x", "type": "party"}]})
        doc = _make_document(content="note", summary="Clinic visit")
        assert await TimelineSynthesizer(oracle).extract_events(doc) == [fallback_event(doc)]

    async def test_unavailable_oracle_falls_back(self):
        doc = _make_document(category="prescription", summary="Aspirin 81mg")
        events = await TimelineSynthesizer(NullOracle()).extract_events(doc)
        assert len(events) == 1
        assert events[0].event_type == "medication"

    async def test_timeout_falls_back(self):
        class SlowOracle(NullOracle):
            async def generate_events(self, document_text, document_date):
                await asyncio.sleep(1)
                return []

        doc = _make_document(summary="Slow document")
        events = await TimelineSynthesizer(SlowOracle(), timeout=0.01).extract_events(doc)
        assert events == [fallback_event(doc)]

    async def test_one_failing_document_does_not_abort(self):
        oracle = FakeOracle(
            events={
                "explodes": RuntimeError("boom"),
                "works": [{"description": "Lab drawn", "type": "lab_result"}],
            }
        )
        docs = [
            _make_document("bad", content="explodes", summary="Bad doc", date=datetime.date(2024, 2, 1)),
            _make_document("good", content="works", date=datetime.date(2024, 1, 1)),
        ]
        events = await TimelineSynthesizer(oracle).build(docs)
        assert [e.document_id for e in events] == ["good", "bad"]
        assert events[1].description == "Bad doc"

    async def test_build_is_sorted(self):
        docs = [
            _make_document("c", date=datetime.date(2024, 3, 1), summary="third"),
            _make_document("a", date=datetime.date(2024, 1, 1), summary="first"),
            _make_document("b", date=datetime.date(2024, 2, 1), summary="second"),
        ]
        events = await TimelineSynthesizer(NullOracle()).build(docs)
        assert [e.description for e in events] == ["first", "second", "third"]
        dates = [e.date for e in events]
        assert dates == sorted(dates)

    async def test_build_empty(self):
        assert await TimelineSynthesizer(NullOracle()).build([]) == []
