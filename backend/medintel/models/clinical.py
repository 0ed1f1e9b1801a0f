"""Pydantic models for clinical reasoning: reference data, timeline, trends, alerts."""

from __future__ import annotations

import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

EventType = Literal[
    "medication", "diagnosis", "lab_result", "vital_signs", "procedure", "visit"
]
InteractionSeverity = Literal["mild", "moderate", "severe", "contraindicated"]
TrendDirection = Literal["improving", "stable", "declining", "fluctuating"]
RiskLevel = Literal["low", "moderate", "high", "critical"]
# The engine emits info/warning/critical; high/medium/low are accepted so
# alerts from other producers can be ranked alongside.
AlertSeverity = Literal["critical", "high", "warning", "medium", "info", "low"]
AlertType = Literal["drug_interaction", "vital_trend", "lab_abnormal"]
TreatmentEffectiveness = Literal["improving", "stable", "declining", "unknown"]
Adherence = Literal["good", "moderate", "poor", "unknown"]
Gender = Literal["both", "male", "female"]


# --- Reference data ---


class DrugInteractionEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    drug1: str
    drug2: str
    severity: InteractionSeverity
    mechanism: str
    clinical_effect: str
    management: str
    evidence: str = ""
    sources: list[str] = Field(default_factory=list)


class LabRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    parameter: str
    unit: str
    normal_min: float
    normal_max: float
    critical_min: float
    critical_max: float
    gender: Gender = "both"
    aliases: list[str] = Field(default_factory=list)


class ClinicalGuideline(BaseModel):
    model_config = ConfigDict(frozen=True)

    condition: str
    organization: str
    first_line: list[str]
    second_line: list[str] = Field(default_factory=list)
    monitoring: list[str] = Field(default_factory=list)
    evidence_level: Literal["A", "B", "C"] = "C"


class MedicationProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    generic_name: str
    drug_class: str
    mechanism: str
    indications: list[str] = Field(default_factory=list)
    contraindications: list[str] = Field(default_factory=list)
    side_effects: list[str] = Field(default_factory=list)
    monitoring: list[str] = Field(default_factory=list)
    dosing: dict[str, str] = Field(default_factory=dict)


class LabEvaluation(BaseModel):
    status: Literal["normal", "abnormal", "critical"]
    interpretation: str
    recommendations: list[str]


class TreatmentRecommendations(BaseModel):
    recommendations: list[str]
    warnings: list[str]
    monitoring: list[str]


# --- Timeline ---


class TimelineEvent(BaseModel):
    """A dated clinical event derived from one document."""

    model_config = ConfigDict(frozen=True)

    date: datetime.date
    description: str
    event_type: EventType
    value: str | None = None
    doctor: str | None = None
    hospital: str | None = None
    document_id: str


class TimelineDay(BaseModel):
    """All events falling on one calendar date (display projection)."""

    date: datetime.date
    events: list[TimelineEvent]


# --- Reasoning output ---


class TrendPoint(BaseModel):
    date: datetime.date
    value: float
    unit: str = ""
    document_id: str | None = None


class TargetRange(BaseModel):
    min: float | None = None
    max: float | None = None
    unit: str = ""


class DrugInteraction(BaseModel):
    """An interaction found between two of the patient's medications."""

    drug1: str
    drug2: str
    severity: InteractionSeverity
    mechanism: str = ""
    clinical_effect: str
    management: str
    sources: list[str] = Field(default_factory=list)
    source: Literal["reference", "oracle"] = "reference"


class VitalTrend(BaseModel):
    parameter: str
    values: list[TrendPoint]
    trend: TrendDirection
    target: TargetRange | None = None
    risk_level: RiskLevel
    note: str | None = None


class ClinicalAlert(BaseModel):
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    recommendation: str
    document_references: list[str] = Field(default_factory=list)
    observed_on: datetime.date | None = None
    due_date: datetime.date | None = None


class TreatmentPattern(BaseModel):
    """How one condition has been treated across the related documents."""

    condition: str
    medications: list[str]
    duration: str = "Unknown"
    effectiveness: TreatmentEffectiveness = "unknown"
    adherence: Adherence = "unknown"
    side_effects: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    document_references: list[str] = Field(default_factory=list)
    source: Literal["reference", "oracle"] = "reference"


class AnalysisResult(BaseModel):
    interactions: list[DrugInteraction]
    trends: list[VitalTrend]
    alerts: list[ClinicalAlert]
    recommendations: list[str]
    warnings: list[str] = Field(default_factory=list)
    monitoring: list[str] = Field(default_factory=list)
    risk_factors: list[str] = Field(default_factory=list)
    narrative: str


class QueryAnswer(BaseModel):
    query: str
    answer: str
    confidence: float
    sources: list[str]
    medical_context: list[str] = Field(default_factory=list)
    timeline: list[TimelineEvent] | None = None


class ClinicalInsights(BaseModel):
    medications: list[str]
    conditions: list[str]
    timeline: list[TimelineEvent]
    lab_series: dict[str, list[TrendPoint]]
    treatment_patterns: list[TreatmentPattern] = Field(default_factory=list)
    analysis: AnalysisResult
