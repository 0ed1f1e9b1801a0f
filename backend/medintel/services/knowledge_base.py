"""Knowledge Reference Store: drug interactions, lab ranges and treatment guidelines.

The default tables are illustrative, not a clinical database. Callers can
build a ``ReferenceStore`` over their own tables.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence

from medintel.models.clinical import (
    ClinicalGuideline,
    DrugInteractionEntry,
    LabEvaluation,
    LabRange,
    MedicationProfile,
    TreatmentRecommendations,
)

logger = logging.getLogger(__name__)

DRUG_INTERACTIONS: list[DrugInteractionEntry] = [
    DrugInteractionEntry(
        drug1="warfarin",
        drug2="aspirin",
        severity="severe",
        mechanism="Additive anticoagulant effects",
        clinical_effect="Increased bleeding risk, especially GI and intracranial",
        management="Avoid combination if possible. If necessary, monitor INR closely",
        evidence="Multiple RCTs show 2-3x increased bleeding risk",
        sources=["FDA Drug Interactions Database", "Lexicomp"],
    ),
    DrugInteractionEntry(
        drug1="metformin",
        drug2="contrast dye",
        severity="severe",
        mechanism="Reduced renal clearance of metformin",
        clinical_effect="Risk of lactic acidosis",
        management="Hold metformin 48 hours before and after contrast",
        evidence="FDA Black Box Warning",
        sources=["FDA", "ACR Guidelines"],
    ),
    DrugInteractionEntry(
        drug1="lisinopril",
        drug2="potassium",
        severity="moderate",
        mechanism="ACE inhibitors reduce potassium excretion",
        clinical_effect="Hyperkalemia risk",
        management="Monitor serum potassium weekly initially",
        evidence="Well-documented in clinical practice",
        sources=["AHA Guidelines"],
    ),
    DrugInteractionEntry(
        drug1="simvastatin",
        drug2="amiodarone",
        severity="severe",
        mechanism="CYP3A4 inhibition increases statin levels",
        clinical_effect="Increased risk of rhabdomyolysis",
        management="Limit simvastatin to 20mg daily or switch to different statin",
        evidence="FDA safety communication 2011",
        sources=["FDA", "Cardiology guidelines"],
    ),
    DrugInteractionEntry(
        drug1="digoxin",
        drug2="furosemide",
        severity="moderate",
        mechanism="Diuretic-induced hypokalemia increases digoxin toxicity",
        clinical_effect="Increased risk of digoxin toxicity",
        management="Monitor potassium and digoxin levels closely",
        evidence="Classic pharmacology interaction",
        sources=["Pharmacology textbooks"],
    ),
]

LAB_RANGES: list[LabRange] = [
    LabRange(parameter="Hemoglobin", unit="g/dL", normal_min=12.0, normal_max=15.5,
             critical_min=7.0, critical_max=20.0, gender="female"),
    LabRange(parameter="Hemoglobin", unit="g/dL", normal_min=13.5, normal_max=17.5,
             critical_min=7.0, critical_max=20.0, gender="male"),
    LabRange(parameter="Glucose", unit="mg/dL", normal_min=70, normal_max=99,
             critical_min=50, critical_max=400, aliases=["blood glucose", "fasting glucose"]),
    LabRange(parameter="HbA1c", unit="%", normal_min=4.0, normal_max=5.6,
             critical_min=3.0, critical_max=15.0, aliases=["a1c", "hemoglobin a1c"]),
    LabRange(parameter="Total Cholesterol", unit="mg/dL", normal_min=0, normal_max=200,
             critical_min=0, critical_max=500),
    LabRange(parameter="LDL Cholesterol", unit="mg/dL", normal_min=0, normal_max=100,
             critical_min=0, critical_max=300, aliases=["ldl"]),
    LabRange(parameter="HDL Cholesterol", unit="mg/dL", normal_min=40, normal_max=200,
             critical_min=20, critical_max=200, gender="male", aliases=["hdl"]),
    LabRange(parameter="HDL Cholesterol", unit="mg/dL", normal_min=50, normal_max=200,
             critical_min=20, critical_max=200, gender="female", aliases=["hdl"]),
    LabRange(parameter="Creatinine", unit="mg/dL", normal_min=0.6, normal_max=1.2,
             critical_min=0.3, critical_max=10.0),
    LabRange(parameter="eGFR", unit="mL/min/1.73m2", normal_min=90, normal_max=200,
             critical_min=15, critical_max=200, aliases=["gfr"]),
    LabRange(parameter="Blood Pressure Systolic", unit="mmHg", normal_min=90, normal_max=120,
             critical_min=70, critical_max=180, aliases=["systolic", "systolic bp"]),
    LabRange(parameter="Blood Pressure Diastolic", unit="mmHg", normal_min=60, normal_max=80,
             critical_min=40, critical_max=110, aliases=["diastolic", "diastolic bp"]),
    LabRange(parameter="Heart Rate", unit="bpm", normal_min=60, normal_max=100,
             critical_min=40, critical_max=150, aliases=["pulse"]),
    LabRange(parameter="Potassium", unit="mEq/L", normal_min=3.5, normal_max=5.0,
             critical_min=2.5, critical_max=6.5),
]

CLINICAL_GUIDELINES: list[ClinicalGuideline] = [
    ClinicalGuideline(
        condition="Hypertension",
        organization="AHA/ACC 2017",
        first_line=["ACE inhibitor", "ARB", "Thiazide diuretic", "Calcium channel blocker",
                    "lisinopril", "amlodipine"],
        second_line=["Beta-blocker", "Aldosterone antagonist"],
        monitoring=["Blood pressure", "Electrolytes", "Kidney function"],
        evidence_level="A",
    ),
    ClinicalGuideline(
        condition="Type 2 Diabetes",
        organization="ADA 2023",
        first_line=["Metformin", "Lifestyle modification"],
        second_line=["GLP-1 agonist", "SGLT-2 inhibitor", "Insulin"],
        monitoring=["HbA1c q3months", "Annual eye exam", "Lipids"],
        evidence_level="A",
    ),
    ClinicalGuideline(
        condition="Hyperlipidemia",
        organization="ACC/AHA 2018",
        first_line=["High-intensity statin", "Moderate-intensity statin",
                    "atorvastatin", "rosuvastatin", "simvastatin"],
        second_line=["Ezetimibe", "PCSK9 inhibitor"],
        monitoring=["Lipid panel 4-12 weeks", "Liver enzymes", "CK if symptoms"],
        evidence_level="A",
    ),
]

MEDICATION_PROFILES: list[MedicationProfile] = [
    MedicationProfile(
        name="Lisinopril",
        generic_name="lisinopril",
        drug_class="ACE Inhibitor",
        mechanism="Inhibits angiotensin-converting enzyme",
        indications=["Hypertension", "Heart failure", "Post-MI"],
        contraindications=["Pregnancy", "Bilateral renal artery stenosis", "Angioedema history"],
        side_effects=["Dry cough", "Hyperkalemia", "Angioedema", "Hypotension"],
        monitoring=["Blood pressure", "Potassium", "Creatinine"],
        dosing={"adult": "5-40mg daily", "renal": "Reduce dose if CrCl <30"},
    ),
    MedicationProfile(
        name="Metformin",
        generic_name="metformin",
        drug_class="Biguanide",
        mechanism="Decreases hepatic glucose production, increases insulin sensitivity",
        indications=["Type 2 diabetes", "Prediabetes", "PCOS"],
        contraindications=["eGFR <30", "Metabolic acidosis", "Severe heart failure"],
        side_effects=["GI upset", "Lactic acidosis (rare)", "B12 deficiency"],
        monitoring=["HbA1c", "Kidney function", "B12 levels"],
        dosing={"adult": "500-2000mg daily in divided doses", "renal": "Avoid if eGFR <30"},
    ),
]


def _dedupe(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def _names_match(a: str, b: str) -> bool:
    return a in b or b in a


class ReferenceStore:
    """Read-only lookups over the reference tables."""

    def __init__(
        self,
        interactions: Sequence[DrugInteractionEntry] = DRUG_INTERACTIONS,
        lab_ranges: Sequence[LabRange] = LAB_RANGES,
        guidelines: Sequence[ClinicalGuideline] = CLINICAL_GUIDELINES,
        medications: Sequence[MedicationProfile] = MEDICATION_PROFILES,
    ) -> None:
        self.interactions = tuple(interactions)
        self.lab_ranges = tuple(lab_ranges)
        self.guidelines = tuple(guidelines)
        self.medications = tuple(medications)

    def find_interaction(self, drug_a: str, drug_b: str) -> DrugInteractionEntry | None:
        """Case-insensitive substring match of the pair, in either order."""
        a = drug_a.strip().lower()
        b = drug_b.strip().lower()
        if not a or not b:
            return None
        for entry in self.interactions:
            e1 = entry.drug1.lower()
            e2 = entry.drug2.lower()
            if (_names_match(a, e1) and _names_match(b, e2)) or (
                _names_match(a, e2) and _names_match(b, e1)
            ):
                return entry
        return None

    def find_lab_range(self, parameter: str, gender: str | None = None) -> LabRange | None:
        """Match by parameter name or alias; gendered entries need a matching gender."""
        name = parameter.strip().lower()
        for entry in self.lab_ranges:
            names = [entry.parameter.lower(), *(alias.lower() for alias in entry.aliases)]
            if name not in names:
                continue
            if entry.gender == "both" or entry.gender == gender:
                return entry
        return None

    def known_parameters(self) -> list[str]:
        """Canonical parameter names, in table order."""
        return _dedupe(entry.parameter for entry in self.lab_ranges)

    def parameter_names(self, parameter: str) -> list[str]:
        """All names (canonical first, then aliases) a parameter is known by."""
        names: list[str] = []
        for entry in self.lab_ranges:
            if entry.parameter == parameter:
                names.extend([entry.parameter, *entry.aliases])
        return _dedupe(names)

    def evaluate_lab_value(
        self, parameter: str, value: float, gender: str | None = None
    ) -> LabEvaluation:
        lab_range = self.find_lab_range(parameter, gender)
        if lab_range is None:
            return LabEvaluation(
                status="normal",
                interpretation="Reference range not available",
                recommendations=["Consult laboratory reference values"],
            )

        normal = f"(Normal: {lab_range.normal_min:g}-{lab_range.normal_max:g})"
        if value <= lab_range.critical_min or value >= lab_range.critical_max:
            return LabEvaluation(
                status="critical",
                interpretation=f"CRITICAL: {value:g} {lab_range.unit} {normal}",
                recommendations=[
                    "Immediate clinical attention required",
                    "Repeat test to confirm",
                ],
            )
        if value < lab_range.normal_min or value > lab_range.normal_max:
            return LabEvaluation(
                status="abnormal",
                interpretation=f"Abnormal: {value:g} {lab_range.unit} {normal}",
                recommendations=[
                    "Clinical correlation recommended",
                    "Consider repeat testing",
                ],
            )
        return LabEvaluation(
            status="normal",
            interpretation=f"Normal: {value:g} {lab_range.unit}",
            recommendations=["Continue routine monitoring"],
        )

    def get_guideline(self, condition: str) -> ClinicalGuideline | None:
        name = condition.strip().lower()
        for guideline in self.guidelines:
            if guideline.condition.lower() == name:
                return guideline
        return None

    def get_medication_info(self, name: str) -> MedicationProfile | None:
        """Exact brand or generic name, else a generic name inside ``name`` ("Metformin 500mg")."""
        key = name.strip().lower()
        if not key:
            return None
        for profile in self.medications:
            if key in (profile.name.lower(), profile.generic_name.lower()):
                return profile
        words = set(re.findall(r"[a-z0-9]+", key))
        for profile in self.medications:
            if profile.generic_name.lower() in words:
                return profile
        return None

    def treatment_recommendations(
        self, conditions: Sequence[str], medications: Sequence[str]
    ) -> TreatmentRecommendations:
        """Guideline gaps, monitoring items and severe interaction warnings."""
        recommendations: list[str] = []
        monitoring: list[str] = []
        current = [m.lower() for m in medications]

        for condition in conditions:
            guideline = self.get_guideline(condition)
            if guideline is None:
                continue
            on_first_line = any(
                therapy.lower() in med for therapy in guideline.first_line for med in current
            )
            if not on_first_line:
                recommendations.append(
                    f"Consider first-line therapy for {condition}: "
                    f"{', '.join(guideline.first_line)}"
                )
            monitoring.extend(guideline.monitoring)

        for medication in medications:
            profile = self.get_medication_info(medication)
            if profile is not None:
                monitoring.extend(profile.monitoring)

        warnings: list[str] = []
        for i, drug_a in enumerate(medications):
            for drug_b in medications[i + 1 :]:
                entry = self.find_interaction(drug_a, drug_b)
                if entry and entry.severity in ("severe", "contraindicated"):
                    warnings.append(
                        f"{entry.severity.upper()}: {entry.drug1} + {entry.drug2} - "
                        f"{entry.management}"
                    )

        return TreatmentRecommendations(
            recommendations=_dedupe(recommendations),
            warnings=_dedupe(warnings),
            monitoring=_dedupe(monitoring),
        )


default_store = ReferenceStore()
