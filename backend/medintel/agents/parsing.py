"""Strict parsers for oracle output.

The oracle may hand back structured output (already a dict/list) or free
text with JSON somewhere inside it. Shapes are validated before use; any
failure raises ``OracleResponseError`` so callers can fall back.
"""

from __future__ import annotations

import datetime
import json
import logging
import re
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter, ValidationError

from medintel.agents.oracle import OracleResponseError
from medintel.models.clinical import (
    Adherence,
    DrugInteraction,
    EventType,
    InteractionSeverity,
    TimelineEvent,
    TreatmentEffectiveness,
    TreatmentPattern,
)
from medintel.models.documents import Document

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")
_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class OracleEvent(BaseModel):
    date: datetime.date | None = None
    description: str = Field(
        min_length=1, validation_alias=AliasChoices("description", "event")
    )
    type: EventType
    value: str | None = None


class OracleEventList(BaseModel):
    events: list[OracleEvent]


class OracleInteraction(BaseModel):
    has_interaction: bool = Field(
        validation_alias=AliasChoices("has_interaction", "hasInteraction")
    )
    severity: InteractionSeverity | None = None
    description: str = ""
    recommendation: str = ""


class OracleTermList(BaseModel):
    terms: list[str]


class OracleTreatmentPattern(BaseModel):
    medications: list[str] = Field(default_factory=list)
    duration: str | None = None
    effectiveness: TreatmentEffectiveness | None = None
    adherence: Adherence | None = None
    side_effects: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("side_effects", "sideEffects")
    )
    recommendations: list[str] = Field(default_factory=list)


_EVENTS = TypeAdapter(list[OracleEvent])
_TERMS = TypeAdapter(list[str])


def extract_json(raw: Any, *, expect: type = list) -> Any:
    """Return the JSON payload in ``raw``, decoding text if necessary.

    Text is searched for a fenced ```json block first, then for the first
    array (or object) spanning the text.
    """
    if not isinstance(raw, str):
        return raw

    match = _FENCED_JSON.search(raw)
    if match:
        text = match.group(1)
    else:
        pattern = _JSON_ARRAY if expect is list else _JSON_OBJECT
        found = pattern.search(raw)
        text = found.group(0) if found else raw

    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise OracleResponseError(
            code="INVALID_JSON", message=f"Oracle output is not JSON: {e}"
        ) from e


def parse_events(raw: Any, document: Document) -> list[TimelineEvent]:
    """Validate oracle events and bind them to their source document."""
    payload = extract_json(raw, expect=list)
    if isinstance(payload, dict) and "events" in payload:
        payload = payload["events"]
    try:
        items = _EVENTS.validate_python(payload)
    except ValidationError as e:
        raise OracleResponseError(
            code="INVALID_EVENTS",
            message=f"Oracle events failed validation: {e.error_count()} errors",
        ) from e

    return [
        TimelineEvent(
            date=item.date or document.date,
            description=item.description,
            event_type=item.type,
            value=item.value,
            doctor=document.doctor,
            hospital=document.hospital,
            document_id=document.id,
        )
        for item in items
    ]


def parse_interaction(raw: Any, drug_a: str, drug_b: str) -> DrugInteraction | None:
    """Validate an oracle interaction verdict. ``None`` means no interaction."""
    payload = extract_json(raw, expect=dict)
    try:
        verdict = OracleInteraction.model_validate(payload)
    except ValidationError as e:
        raise OracleResponseError(
            code="INVALID_INTERACTION",
            message=f"Oracle interaction failed validation: {e.error_count()} errors",
        ) from e

    if not verdict.has_interaction:
        return None
    if verdict.severity is None:
        raise OracleResponseError(
            code="INVALID_INTERACTION",
            message="Oracle reported an interaction without a severity",
        )
    return DrugInteraction(
        drug1=drug_a,
        drug2=drug_b,
        severity=verdict.severity,
        clinical_effect=verdict.description,
        management=verdict.recommendation,
        sources=["AI Analysis"],
        source="oracle",
    )


def parse_terms(raw: Any) -> list[str]:
    """Validate a list of medication / condition names, lower-cased and de-duplicated."""
    payload = extract_json(raw, expect=list)
    if isinstance(payload, dict) and "terms" in payload:
        payload = payload["terms"]
    try:
        terms = _TERMS.validate_python(payload)
    except ValidationError as e:
        raise OracleResponseError(
            code="INVALID_TERMS",
            message=f"Oracle terms failed validation: {e.error_count()} errors",
        ) from e

    seen: dict[str, None] = {}
    for term in terms:
        cleaned = term.strip().lower()
        if cleaned:
            seen.setdefault(cleaned)
    return list(seen)


def parse_treatment_pattern(
    raw: Any, condition: str, document_ids: list[str]
) -> TreatmentPattern:
    """Validate an oracle treatment analysis; missing fields take their unknown defaults."""
    payload = extract_json(raw, expect=dict)
    try:
        analysis = OracleTreatmentPattern.model_validate(payload)
    except ValidationError as e:
        raise OracleResponseError(
            code="INVALID_TREATMENT",
            message=f"Oracle treatment pattern failed validation: {e.error_count()} errors",
        ) from e

    return TreatmentPattern(
        condition=condition,
        medications=[m.strip() for m in analysis.medications if m.strip()],
        duration=(analysis.duration or "").strip() or "Unknown",
        effectiveness=analysis.effectiveness or "unknown",
        adherence=analysis.adherence or "unknown",
        side_effects=analysis.side_effects,
        recommendations=analysis.recommendations,
        document_references=document_ids,
        source="oracle",
    )
