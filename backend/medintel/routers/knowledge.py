"""Knowledge engine API endpoints.

Every request carries its own document snapshot; nothing is kept between
requests.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from medintel.agents.oracle import get_oracle
from medintel.models.clinical import AnalysisResult, ClinicalInsights, QueryAnswer
from medintel.models.documents import DocumentRecord
from medintel.models.schemas import (
    AnalyzeRequest,
    CorpusRequest,
    ErrorDetail,
    QueryRequest,
    SearchHit,
    SearchRequest,
    TimelineRequest,
    TimelineResponse,
)
from medintel.services.knowledge_engine import InvalidDocumentError, MedicalKnowledgeEngine
from medintel.services.retrieval import DuplicateDocumentError, RetrievalIndex
from medintel.services.timeline import group_by_date

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["knowledge"])


def get_engine() -> MedicalKnowledgeEngine:
    """Dependency for FastAPI routes to get an engine bound to the configured oracle."""
    return MedicalKnowledgeEngine(oracle=get_oracle())


async def _load_corpus(
    engine: MedicalKnowledgeEngine, records: list[DocumentRecord]
) -> RetrievalIndex:
    corpus = engine.new_corpus()
    try:
        await engine.ingest_many(corpus, records)
    except InvalidDocumentError as e:
        raise HTTPException(
            status_code=422,
            detail=ErrorDetail(code=e.code, message=e.message).model_dump(),
        )
    except DuplicateDocumentError as e:
        raise HTTPException(
            status_code=409,
            detail=ErrorDetail(code=e.code, message=e.message).model_dump(),
        )
    return corpus


@router.post("/search", response_model=list[SearchHit])
async def search_documents(
    request: SearchRequest,
    engine: MedicalKnowledgeEngine = Depends(get_engine),
) -> list[SearchHit]:
    corpus = await _load_corpus(engine, request.documents)
    results = await engine.search(corpus, request.query, request.k)
    return [
        SearchHit(
            document_id=r.document.id,
            name=r.document.name,
            category=r.document.category,
            score=r.score,
            rank=r.rank,
        )
        for r in results
    ]


@router.post("/timeline", response_model=TimelineResponse)
async def build_timeline(
    request: TimelineRequest,
    engine: MedicalKnowledgeEngine = Depends(get_engine),
) -> TimelineResponse:
    corpus = await _load_corpus(engine, request.documents)
    events = await engine.build_timeline(corpus, request.document_ids)
    return TimelineResponse(events=events, days=group_by_date(events))


@router.post("/analyze", response_model=AnalysisResult)
async def analyze(
    request: AnalyzeRequest,
    engine: MedicalKnowledgeEngine = Depends(get_engine),
) -> AnalysisResult:
    return await engine.analyze(
        request.medications, request.conditions, request.lab_series, request.gender
    )


@router.post("/query", response_model=QueryAnswer)
async def answer_query(
    request: QueryRequest,
    engine: MedicalKnowledgeEngine = Depends(get_engine),
) -> QueryAnswer:
    corpus = await _load_corpus(engine, request.documents)
    logger.info("Answering query over %d documents", len(corpus))
    return await engine.answer(corpus, request.query, request.k)


@router.post("/insights", response_model=ClinicalInsights)
async def clinical_insights(
    request: CorpusRequest,
    engine: MedicalKnowledgeEngine = Depends(get_engine),
) -> ClinicalInsights:
    corpus = await _load_corpus(engine, request.documents)
    return await engine.clinical_insights(corpus)
