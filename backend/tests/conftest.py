"""Test fixtures and configuration."""

from __future__ import annotations

import datetime
from collections.abc import AsyncIterator
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from medintel.agents.oracle import OracleUnavailableError
from medintel.main import app
from medintel.models.documents import DocumentRecord
from medintel.routers.knowledge import get_engine
from medintel.services.knowledge_engine import MedicalKnowledgeEngine


class FakeOracle:
    """Deterministic oracle. Unset responses behave like an unavailable oracle."""

    def __init__(
        self,
        *,
        embedding: list[float] | Exception | None = None,
        events: dict[str, Any] | None = None,
        text: str | Exception | None = None,
        interactions: dict[frozenset[str], Any] | None = None,
        terms: dict[str, Any] | None = None,
        treatments: dict[str, Any] | None = None,
    ) -> None:
        self.embedding = embedding
        self.events = events or {}
        self.text = text
        self.interactions = interactions or {}
        self.terms = terms or {}
        self.treatments = treatments or {}
        self.calls: list[str] = []

    def _unavailable(self) -> OracleUnavailableError:
        return OracleUnavailableError(code="FAKE_UNAVAILABLE", message="not configured")

    async def embed(self, text: str) -> list[float]:
        self.calls.append("embed")
        if self.embedding is None:
            raise self._unavailable()
        if isinstance(self.embedding, Exception):
            raise self.embedding
        return list(self.embedding)

    async def generate_events(self, document_text: str, document_date: datetime.date) -> Any:
        self.calls.append("generate_events")
        for needle, raw in self.events.items():
            if needle in document_text:
                if isinstance(raw, Exception):
                    raise raw
                return raw
        raise self._unavailable()

    async def generate_text(self, prompt_facts: str) -> str:
        self.calls.append("generate_text")
        if self.text is None:
            raise self._unavailable()
        if isinstance(self.text, Exception):
            raise self.text
        return self.text

    async def check_interaction(self, drug_a: str, drug_b: str) -> Any:
        self.calls.append("check_interaction")
        key = frozenset({drug_a.lower(), drug_b.lower()})
        if key not in self.interactions:
            raise self._unavailable()
        raw = self.interactions[key]
        if isinstance(raw, Exception):
            raise raw
        return raw

    async def extract_terms(self, kind: str, text: str) -> Any:
        self.calls.append("extract_terms")
        if kind not in self.terms:
            raise self._unavailable()
        raw = self.terms[kind]
        if isinstance(raw, Exception):
            raise raw
        return raw

    async def analyze_treatment(self, condition: str, history: str) -> Any:
        self.calls.append("analyze_treatment")
        if condition.lower() not in self.treatments:
            raise self._unavailable()
        raw = self.treatments[condition.lower()]
        if isinstance(raw, Exception):
            raise raw
        return raw


def make_record(
    id: str | None = "doc-1",
    name: str = "Test Document",
    category: str = "other",
    date: datetime.date = datetime.date(2024, 1, 15),
    content: str = "",
    summary: str = "",
    **kwargs: Any,
) -> DocumentRecord:
    return DocumentRecord(
        id=id,
        name=name,
        category=category,
        date=date,
        content=content,
        summary=summary,
        **kwargs,
    )


SAMPLE_RECORDS = [
    make_record(
        id="rx-1",
        name="Cardiology prescription",
        category="prescription",
        date=datetime.date(2024, 1, 10),
        content="Medication: Warfarin 5mg once daily\nAspirin 81mg once daily",
        summary="Warfarin and aspirin prescribed for atrial fibrillation",
        doctor="Patel",
        hospital="City Hospital",
        tags=["warfarin", "aspirin"],
    ),
    make_record(
        id="lab-1",
        name="Renal panel",
        category="lab_report",
        date=datetime.date(2024, 2, 1),
        content="Blood test results\neGFR: 62\nCreatinine: 1.3",
        summary="eGFR 62, creatinine 1.3",
        tags=["kidney function"],
    ),
    make_record(
        id="bill-1",
        name="Hospital invoice",
        category="bill",
        date=datetime.date(2024, 3, 5),
        content="Invoice for outpatient consultation",
        summary="Outpatient consultation invoice",
    ),
]


@pytest.fixture
def fake_oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def engine(fake_oracle: FakeOracle) -> MedicalKnowledgeEngine:
    return MedicalKnowledgeEngine(oracle=fake_oracle)


@pytest.fixture
def sample_records() -> list[DocumentRecord]:
    return [r.model_copy(deep=True) for r in SAMPLE_RECORDS]


@pytest.fixture
async def client(engine: MedicalKnowledgeEngine) -> AsyncIterator[AsyncClient]:
    app.dependency_overrides[get_engine] = lambda: engine
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
