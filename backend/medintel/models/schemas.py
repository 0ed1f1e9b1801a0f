"""Pydantic request/response/error schemas for the HTTP surface."""

from __future__ import annotations

from pydantic import BaseModel, Field

from medintel.models.clinical import Gender, TimelineDay, TimelineEvent, TrendPoint
from medintel.models.documents import DocumentCategory, DocumentRecord

# --- Requests (each request carries its own document snapshot) ---


class CorpusRequest(BaseModel):
    documents: list[DocumentRecord]


class SearchRequest(CorpusRequest):
    query: str
    k: int = 5


class TimelineRequest(CorpusRequest):
    document_ids: list[str] | None = None


class QueryRequest(CorpusRequest):
    query: str
    k: int = 5


class AnalyzeRequest(BaseModel):
    medications: list[str] = Field(default_factory=list)
    conditions: list[str] = Field(default_factory=list)
    lab_series: dict[str, list[TrendPoint]] = Field(default_factory=dict)
    gender: Gender | None = None


# --- Responses ---


class SearchHit(BaseModel):
    """A ranked document, without its embedding payload."""

    document_id: str
    name: str
    category: DocumentCategory
    score: float
    rank: int


class TimelineResponse(BaseModel):
    events: list[TimelineEvent]
    days: list[TimelineDay]


# --- Error schema ---


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict = {}
