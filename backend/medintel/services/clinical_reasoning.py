"""Clinical reasoning: drug interactions, trend classification, risk levels, alerts.

Everything except ``ClinicalReasoningEngine``'s oracle calls is synchronous,
side-effect free and deterministic for identical inputs.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import math
import re
from collections.abc import Mapping, Sequence

from medintel.agents.oracle import Oracle, OracleError, TermKind
from medintel.agents.parsing import parse_interaction, parse_terms, parse_treatment_pattern
from medintel.config import settings
from medintel.models.clinical import (
    AlertSeverity,
    AnalysisResult,
    ClinicalAlert,
    DrugInteraction,
    LabRange,
    RiskLevel,
    TargetRange,
    TimelineEvent,
    TrendDirection,
    TrendPoint,
    TreatmentPattern,
    VitalTrend,
)
from medintel.models.documents import Document
from medintel.services.knowledge_base import ReferenceStore, default_store

logger = logging.getLogger(__name__)

NARRATIVE_PLACEHOLDER = "Unable to generate patient summary at this time."
NO_REFERENCE_RANGE = "no reference range"

SEVERITY_RANK: dict[str, int] = {
    "critical": 4,
    "high": 3,
    "warning": 3,
    "medium": 2,
    "info": 2,
    "low": 1,
}

# (medication substring, risk factor)
MEDICATION_RISK_FACTORS: tuple[tuple[str, str], ...] = (
    ("warfarin", "Bleeding risk due to anticoagulation"),
)
# (condition substring, risk factors)
CONDITION_RISK_FACTORS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("diabetes", ("Cardiovascular disease risk", "Kidney disease risk")),
    ("hypertension", ("Stroke risk", "Heart disease risk")),
)
CONDITION_TAG_KEYWORDS = ("diabetes", "hypertension", "cholesterol", "heart", "kidney", "liver")
# Days until an out-of-range lab reading should be rechecked.
RECHECK_DAYS: dict[str, int] = {"critical": 7, "abnormal": 30}

_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


# --- Drug interactions ---


def unique_names(names: Sequence[str]) -> list[str]:
    """Strip, drop blanks and de-duplicate case-insensitively, keeping first spelling."""
    seen: dict[str, str] = {}
    for name in names:
        cleaned = name.strip()
        if cleaned:
            seen.setdefault(cleaned.lower(), cleaned)
    return list(seen.values())


def medication_pairs(medications: Sequence[str]) -> list[tuple[str, str]]:
    meds = unique_names(medications)
    return [(a, b) for i, a in enumerate(meds) for b in meds[i + 1 :]]


def check_drug_interactions(
    medications: Sequence[str], store: ReferenceStore = default_store
) -> list[DrugInteraction]:
    """Reference-table interactions for every unordered pair of distinct medications."""
    interactions: list[DrugInteraction] = []
    for drug_a, drug_b in medication_pairs(medications):
        entry = store.find_interaction(drug_a, drug_b)
        if entry is None:
            continue
        interactions.append(
            DrugInteraction(
                drug1=drug_a,
                drug2=drug_b,
                severity=entry.severity,
                mechanism=entry.mechanism,
                clinical_effect=entry.clinical_effect,
                management=entry.management,
                sources=list(entry.sources) or ["Internal Database"],
                source="reference",
            )
        )
    return interactions


# --- Trends and risk ---


def percent_change(older_mean: float, recent_mean: float) -> float:
    """Percent change of ``recent_mean`` relative to ``older_mean``.

    A zero baseline gives +/-inf for a nonzero recent mean and 0 otherwise.
    """
    if older_mean == 0:
        if recent_mean == 0:
            return 0.0
        return math.copysign(math.inf, recent_mean)
    return (recent_mean - older_mean) / older_mean * 100


def classify_change(change: float) -> TrendDirection:
    """Bucket a percent change.

    Any rise is "improving", whatever the parameter: rising creatinine is
    labelled the same way as rising eGFR.
    """
    if abs(change) < 5:
        return "stable"
    if change > 15:
        return "fluctuating"
    if change >= 5:
        return "improving"
    if change < -5:
        return "declining"
    return "stable"


def classify_trend(points: Sequence[TrendPoint]) -> TrendDirection:
    """Compare the mean of the last (up to 3) points against the earlier ones."""
    if len(points) < 2:
        return "stable"
    ordered = sorted(points, key=lambda p: p.date)
    window = min(3, len(ordered) - 1)
    recent = ordered[-window:]
    older = ordered[:-window] or recent

    recent_mean = sum(p.value for p in recent) / len(recent)
    older_mean = sum(p.value for p in older) / len(older)
    return classify_change(percent_change(older_mean, recent_mean))


def assess_risk_level(value: float, lab_range: LabRange | None) -> RiskLevel:
    """Bucket a value by multiples of its normal bounds."""
    if lab_range is None:
        return "low"
    low = lab_range.normal_min
    high = lab_range.normal_max
    if value < low * 0.5 or value > high * 1.5:
        return "critical"
    if value < low * 0.8 or value > high * 1.2:
        return "high"
    if value < low or value > high:
        return "moderate"
    return "low"


def analyze_trend(
    parameter: str,
    points: Sequence[TrendPoint],
    store: ReferenceStore = default_store,
    gender: str | None = None,
) -> VitalTrend:
    ordered = sorted(points, key=lambda p: p.date)
    lab_range = store.find_lab_range(parameter, gender)
    latest = ordered[-1] if ordered else None

    if lab_range is None:
        target = None
        note: str | None = NO_REFERENCE_RANGE
    else:
        target = TargetRange(
            min=lab_range.normal_min, max=lab_range.normal_max, unit=lab_range.unit
        )
        note = None

    return VitalTrend(
        parameter=parameter,
        values=ordered,
        trend=classify_trend(ordered),
        target=target,
        risk_level=assess_risk_level(latest.value, lab_range) if latest else "low",
        note=note,
    )


def analyze_trends(
    lab_series: Mapping[str, Sequence[TrendPoint]],
    store: ReferenceStore = default_store,
    gender: str | None = None,
) -> list[VitalTrend]:
    """One trend per parameter with at least one point, in input order."""
    return [
        analyze_trend(parameter, points, store, gender)
        for parameter, points in lab_series.items()
        if points
    ]


# --- Alerts ---


def _references(*groups: Sequence[str]) -> list[str]:
    return list(dict.fromkeys(ref for group in groups for ref in group))


def trend_references(trend: VitalTrend) -> list[str]:
    return _references([p.document_id for p in trend.values if p.document_id])


def interaction_alerts(
    interactions: Sequence[DrugInteraction],
    medication_sources: Mapping[str, Sequence[str]] | None = None,
) -> list[ClinicalAlert]:
    sources = medication_sources or {}
    return [
        ClinicalAlert(
            alert_type="drug_interaction",
            severity="critical",
            message=(
                f"Potential {i.severity} interaction between {i.drug1} and {i.drug2}"
            ),
            recommendation=i.management,
            document_references=_references(
                sources.get(i.drug1.lower(), ()), sources.get(i.drug2.lower(), ())
            ),
        )
        for i in interactions
        if i.severity in ("severe", "contraindicated")
    ]


def trend_alerts(trends: Sequence[VitalTrend]) -> list[ClinicalAlert]:
    alerts = []
    for trend in trends:
        if trend.risk_level not in ("high", "critical"):
            continue
        severity: AlertSeverity = "critical" if trend.risk_level == "critical" else "warning"
        alerts.append(
            ClinicalAlert(
                alert_type="vital_trend",
                severity=severity,
                message=f"{trend.parameter} trend is concerning: {trend.trend}",
                recommendation=(
                    f"Monitor {trend.parameter} closely and consider intervention"
                ),
                document_references=trend_references(trend),
                observed_on=trend.values[-1].date if trend.values else None,
            )
        )
    return alerts


def lab_alerts(
    trends: Sequence[VitalTrend],
    store: ReferenceStore = default_store,
    gender: str | None = None,
) -> list[ClinicalAlert]:
    """One alert per parameter whose latest reading is outside its normal range."""
    alerts = []
    for trend in trends:
        if not trend.values:
            continue
        latest = trend.values[-1]
        evaluation = store.evaluate_lab_value(trend.parameter, latest.value, gender)
        if evaluation.status == "normal":
            continue
        severity: AlertSeverity = "critical" if evaluation.status == "critical" else "warning"
        alerts.append(
            ClinicalAlert(
                alert_type="lab_abnormal",
                severity=severity,
                message=f"{trend.parameter} {evaluation.interpretation}",
                recommendation="; ".join(evaluation.recommendations),
                document_references=[latest.document_id] if latest.document_id else [],
                observed_on=latest.date,
                due_date=latest.date + datetime.timedelta(days=RECHECK_DAYS[evaluation.status]),
            )
        )
    return alerts


def severity_rank(severity: str) -> int:
    return SEVERITY_RANK.get(severity, 0)


def rank_alerts(alerts: Sequence[ClinicalAlert]) -> list[ClinicalAlert]:
    """Most severe first; ties by most recent observation, undated last, then input order."""

    def _key(alert: ClinicalAlert) -> tuple[int, int, int]:
        dated = alert.observed_on or alert.due_date
        if dated is None:
            return (-severity_rank(alert.severity), 1, 0)
        return (-severity_rank(alert.severity), 0, -dated.toordinal())

    return sorted(alerts, key=_key)


def generate_alerts(
    interactions: Sequence[DrugInteraction],
    trends: Sequence[VitalTrend],
    store: ReferenceStore = default_store,
    gender: str | None = None,
    medication_sources: Mapping[str, Sequence[str]] | None = None,
) -> list[ClinicalAlert]:
    return rank_alerts(
        [
            *interaction_alerts(interactions, medication_sources),
            *trend_alerts(trends),
            *lab_alerts(trends, store, gender),
        ]
    )


# --- Recommendations and risk factors ---


def identify_risk_factors(
    medications: Sequence[str], conditions: Sequence[str]
) -> list[str]:
    meds = [m.lower() for m in medications]
    conds = [c.lower() for c in conditions]
    factors: dict[str, None] = {}
    for needle, factor in MEDICATION_RISK_FACTORS:
        if any(needle in med for med in meds):
            factors.setdefault(factor)
    for needle, condition_factors in CONDITION_RISK_FACTORS:
        if any(needle in cond for cond in conds):
            for factor in condition_factors:
                factors.setdefault(factor)
    return list(factors)


def build_recommendations(
    interactions: Sequence[DrugInteraction],
    trends: Sequence[VitalTrend],
    guideline_recommendations: Sequence[str] = (),
) -> list[str]:
    recommendations = [i.management for i in interactions if i.management]
    recommendations.extend(
        f"Monitor {t.parameter} - current trend: {t.trend}"
        for t in trends
        if t.risk_level != "low"
    )
    recommendations.extend(guideline_recommendations)
    return list(dict.fromkeys(recommendations))


def summary_facts(
    medications: Sequence[str],
    conditions: Sequence[str],
    interactions: Sequence[DrugInteraction],
    trends: Sequence[VitalTrend],
    alerts: Sequence[ClinicalAlert],
) -> str:
    """Prompt for the narrative: the structured facts, nothing else."""
    lines = [
        "Write a concise patient summary (under 200 words) from these facts only.",
        "Include key conditions, current medications, recent results and overall status.",
        "",
        f"Medications: {', '.join(medications) or 'none recorded'}",
        f"Conditions: {', '.join(conditions) or 'none recorded'}",
    ]
    for i in interactions:
        lines.append(f"Interaction ({i.severity}): {i.drug1} + {i.drug2}: {i.clinical_effect}")
    for t in trends:
        latest = t.values[-1] if t.values else None
        reading = f"{latest.value:g} {latest.unit}".strip() if latest else "n/a"
        lines.append(f"Trend: {t.parameter} {t.trend}, latest {reading}, risk {t.risk_level}")
    for a in alerts:
        lines.append(f"Alert [{a.severity}]: {a.message}")
    return "\n".join(lines)


# --- Series detection ---


def _reading_pattern(name: str) -> re.Pattern[str]:
    return re.compile(rf"{re.escape(name.lower())}[:\s]*(-?\d+(?:\.\d+)?)")


def series_from_documents(
    documents: Sequence[Document], store: ReferenceStore = default_store
) -> dict[str, list[TrendPoint]]:
    """Readings like ``"glucose: 110"`` in lab and test reports, one per document."""
    series: dict[str, list[TrendPoint]] = {}
    reports = [d for d in documents if d.category in ("lab_report", "test_report")]
    for parameter in store.known_parameters():
        names = sorted(store.parameter_names(parameter), key=len, reverse=True)
        lab_range = next(r for r in store.lab_ranges if r.parameter == parameter)
        for doc in reports:
            text = f"{doc.summary}\n{doc.content}".lower()
            for name in names:
                match = _reading_pattern(name).search(text)
                if match:
                    series.setdefault(parameter, []).append(
                        TrendPoint(
                            date=doc.date,
                            value=float(match.group(1)),
                            unit=lab_range.unit,
                            document_id=doc.id,
                        )
                    )
                    break
    return {p: sorted(points, key=lambda pt: pt.date) for p, points in series.items()}


def series_from_timeline(
    events: Sequence[TimelineEvent], store: ReferenceStore = default_store
) -> dict[str, list[TrendPoint]]:
    """Numeric values of lab_result / vital_signs events naming a known parameter."""
    series: dict[str, list[TrendPoint]] = {}
    for event in events:
        if event.event_type not in ("lab_result", "vital_signs") or not event.value:
            continue
        number = _NUMBER.search(event.value)
        if number is None:
            continue
        description = event.description.lower()
        for parameter in store.known_parameters():
            names = store.parameter_names(parameter)
            if any(re.search(rf"\b{re.escape(n.lower())}\b", description) for n in names):
                lab_range = next(r for r in store.lab_ranges if r.parameter == parameter)
                series.setdefault(parameter, []).append(
                    TrendPoint(
                        date=event.date,
                        value=float(number.group(0)),
                        unit=lab_range.unit,
                        document_id=event.document_id,
                    )
                )
                break
    return {p: sorted(points, key=lambda pt: pt.date) for p, points in series.items()}


def merge_series(
    *sources: Mapping[str, Sequence[TrendPoint]],
) -> dict[str, list[TrendPoint]]:
    """Union series by parameter, dropping repeated (date, value) readings."""
    merged: dict[str, dict[tuple[datetime.date, float], TrendPoint]] = {}
    for source in sources:
        for parameter, points in source.items():
            bucket = merged.setdefault(parameter, {})
            for point in points:
                bucket.setdefault((point.date, point.value), point)
    return {
        p: sorted(bucket.values(), key=lambda pt: pt.date) for p, bucket in merged.items()
    }


# --- Treatment patterns ---


def related_documents(condition: str, documents: Sequence[Document]) -> list[Document]:
    """Documents whose summary or any tag mentions the condition, oldest first."""
    needle = condition.strip().lower()
    if not needle:
        return []
    related = [
        d
        for d in documents
        if needle in d.summary.lower() or any(needle in t.lower() for t in d.tags)
    ]
    return sorted(related, key=lambda d: d.date)


class ClinicalReasoningEngine:
    """Runs the structured analysis and asks the oracle only for narrative and extras."""

    def __init__(
        self,
        oracle: Oracle,
        store: ReferenceStore = default_store,
        *,
        timeout: float | None = None,
        oracle_interaction_check: bool | None = None,
    ) -> None:
        self.oracle = oracle
        self.store = store
        self.timeout = timeout if timeout is not None else settings.oracle_timeout_seconds
        self.oracle_interaction_check = (
            oracle_interaction_check
            if oracle_interaction_check is not None
            else settings.oracle_interaction_check
        )

    async def _oracle_interaction(self, drug_a: str, drug_b: str) -> DrugInteraction | None:
        try:
            async with asyncio.timeout(self.timeout):
                raw = await self.oracle.check_interaction(drug_a, drug_b)
            return parse_interaction(raw, drug_a, drug_b)
        except OracleError as e:
            logger.debug("Oracle interaction check skipped for %s+%s (%s)", drug_a, drug_b, e.code)
        except TimeoutError:
            logger.warning("Oracle interaction check timed out for %s+%s", drug_a, drug_b)
        except Exception:
            logger.exception("Oracle interaction check failed for %s+%s", drug_a, drug_b)
        return None

    async def check_interactions(self, medications: Sequence[str]) -> list[DrugInteraction]:
        """Table hits, plus oracle hits for pairs the table does not cover."""
        table_hits = check_drug_interactions(medications, self.store)
        if not self.oracle_interaction_check:
            return table_hits

        covered = {(i.drug1, i.drug2) for i in table_hits}
        uncovered = [pair for pair in medication_pairs(medications) if pair not in covered]
        extra = await asyncio.gather(*(self._oracle_interaction(a, b) for a, b in uncovered))
        oracle_hits = [hit for hit in extra if hit is not None]
        if oracle_hits:
            logger.info("Oracle reported %d additional interactions", len(oracle_hits))
        return [*table_hits, *oracle_hits]

    async def narrative(self, facts: str) -> str:
        try:
            async with asyncio.timeout(self.timeout):
                return await self.oracle.generate_text(facts)
        except OracleError as e:
            logger.info("Narrative unavailable (%s), using placeholder", e.code)
        except TimeoutError:
            logger.warning("Narrative generation timed out, using placeholder")
        except Exception:
            logger.exception("Narrative generation failed, using placeholder")
        return NARRATIVE_PLACEHOLDER

    async def analyze(
        self,
        medications: Sequence[str],
        conditions: Sequence[str],
        lab_series: Mapping[str, Sequence[TrendPoint]],
        gender: str | None = None,
        medication_sources: Mapping[str, Sequence[str]] | None = None,
    ) -> AnalysisResult:
        """Structured analysis. ``medication_sources`` maps lower-cased names to document ids."""
        medications = unique_names(medications)
        conditions = unique_names(conditions)
        logger.info(
            "Analyzing %d medications, %d conditions, %d series",
            len(medications),
            len(conditions),
            len(lab_series),
        )

        interactions = await self.check_interactions(medications)
        trends = analyze_trends(lab_series, self.store, gender)
        alerts = generate_alerts(interactions, trends, self.store, gender, medication_sources)
        treatment = self.store.treatment_recommendations(conditions, medications)
        recommendations = build_recommendations(
            interactions, trends, treatment.recommendations
        )
        narrative = await self.narrative(
            summary_facts(medications, conditions, interactions, trends, alerts)
        )

        logger.info(
            "Analysis: %d interactions, %d trends, %d alerts",
            len(interactions),
            len(trends),
            len(alerts),
        )
        return AnalysisResult(
            interactions=interactions,
            trends=trends,
            alerts=alerts,
            recommendations=recommendations,
            warnings=treatment.warnings,
            monitoring=treatment.monitoring,
            risk_factors=identify_risk_factors(medications, conditions),
            narrative=narrative,
        )

    # --- Treatment patterns ---

    def _fallback_pattern(self, condition: str, related: Sequence[Document]) -> TreatmentPattern:
        medications = unique_names(
            [m for doc in related for m in self._terms_from_tags("medications", doc)]
        )
        return TreatmentPattern(
            condition=condition,
            medications=medications,
            document_references=[doc.id for doc in related],
        )

    async def treatment_pattern(
        self, condition: str, documents: Sequence[Document]
    ) -> TreatmentPattern | None:
        """Oracle analysis of one condition's documents; ``None`` when none mention it."""
        related = related_documents(condition, documents)
        if not related:
            return None
        document_ids = [doc.id for doc in related]
        history = "\n".join(f"{doc.date.isoformat()}: {doc.summary}" for doc in related)
        try:
            async with asyncio.timeout(self.timeout):
                raw = await self.oracle.analyze_treatment(condition, history)
            return parse_treatment_pattern(raw, condition, document_ids)
        except OracleError as e:
            logger.debug("Treatment analysis for %r fell back to tags (%s)", condition, e.code)
        except TimeoutError:
            logger.warning("Treatment analysis timed out for %r", condition)
        except Exception:
            logger.exception("Treatment analysis failed for %r", condition)
        return self._fallback_pattern(condition, related)

    async def treatment_patterns(
        self, conditions: Sequence[str], documents: Sequence[Document]
    ) -> list[TreatmentPattern]:
        """One pattern per condition with related documents, in condition order."""
        patterns = await asyncio.gather(
            *(self.treatment_pattern(c, documents) for c in unique_names(conditions))
        )
        return [p for p in patterns if p is not None]

    # --- Term detection from documents ---

    async def _terms_for(self, kind: TermKind, document: Document) -> list[str]:
        try:
            async with asyncio.timeout(self.timeout):
                raw = await self.oracle.extract_terms(kind, document.summary or document.content)
            return parse_terms(raw)
        except (OracleError, TimeoutError):
            logger.debug("Term extraction fell back to tags for %r", document.id)
        except Exception:
            logger.exception("Term extraction failed for %r, using tags", document.id)
        return self._terms_from_tags(kind, document)

    def _terms_from_tags(self, kind: TermKind, document: Document) -> list[str]:
        tags = [t.strip().lower() for t in document.tags if t.strip()]
        if kind == "conditions":
            return [t for t in tags if any(k in t for k in CONDITION_TAG_KEYWORDS)]
        known = {e.drug1.lower() for e in self.store.interactions}
        known |= {e.drug2.lower() for e in self.store.interactions}
        known |= {m.generic_name.lower() for m in self.store.medications}
        return [t for t in tags if t in known]

    async def detect_term_sources(
        self, kind: TermKind, documents: Sequence[Document]
    ) -> dict[str, list[str]]:
        """Current medications (recent prescriptions) or conditions (recent reports).

        Maps each lower-cased term to the ids of the documents it was found in,
        most recent document first.
        """
        if kind == "medications":
            candidates = [d for d in documents if d.category == "prescription"]
            limit = 5
        else:
            candidates = [
                d
                for d in documents
                if d.category in ("lab_report", "test_report", "prescription")
            ]
            limit = 10
        recent = sorted(candidates, key=lambda d: d.date, reverse=True)[:limit]
        groups = await asyncio.gather(*(self._terms_for(kind, doc) for doc in recent))

        sources: dict[str, list[str]] = {}
        for doc, group in zip(recent, groups):
            for term in unique_names(group):
                ids = sources.setdefault(term.lower(), [])
                if doc.id not in ids:
                    ids.append(doc.id)
        return sources

    async def detect_terms(self, kind: TermKind, documents: Sequence[Document]) -> list[str]:
        return list(await self.detect_term_sources(kind, documents))
