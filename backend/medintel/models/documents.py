"""Pydantic models for the document corpus: records, chunks and search results."""

from __future__ import annotations

import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

DocumentCategory = Literal["prescription", "lab_report", "test_report", "bill", "other"]

ChunkType = Literal[
    "medication", "diagnosis", "lab_result", "vital_signs", "procedure", "general"
]


class DocumentRecord(BaseModel):
    """A document as supplied by the caller, before chunking and embedding.

    The id is optional at the schema level so that a record without one
    reaches the engine and is rejected there with a domain error.
    """

    id: str | None = None
    name: str
    category: DocumentCategory = "other"
    date: datetime.date
    content: str = ""
    summary: str = ""
    doctor: str | None = None
    hospital: str | None = None
    tags: list[str] = Field(default_factory=list)


class Chunk(BaseModel):
    """A contiguous, type-tagged slice of one document's text."""

    model_config = ConfigDict(frozen=True)

    id: str
    document_id: str
    content: str
    chunk_type: ChunkType
    embedding: list[float] = Field(default_factory=list)
    index: int


class Document(BaseModel):
    """An ingested document: the caller's record plus embedding and chunks."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    category: DocumentCategory
    date: datetime.date
    content: str
    summary: str
    doctor: str | None = None
    hospital: str | None = None
    tags: list[str] = Field(default_factory=list)
    embedding: list[float]
    chunks: list[Chunk] = Field(default_factory=list)

    @property
    def text(self) -> str:
        """Body used for chunking and event extraction."""
        return self.content or self.summary


class SearchResult(BaseModel):
    """A ranked document with its cosine similarity to the query."""

    document: Document
    score: float
    rank: int


class ChunkSearchResult(BaseModel):
    """A ranked chunk with its cosine similarity to the query."""

    chunk: Chunk
    score: float
    rank: int
