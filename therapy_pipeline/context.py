"""Patient context construction and risk-flag derivation.

Risk flags are a pure function of the rest of the context. PatientContext
calls derive_risk_flags() on every construction, so flags can never be
edited by hand or go stale after with_updates().
"""

import logging
import re
from typing import Any

from .drug_classes import DrugClass, classify
from .models import (
    Allergy,
    Condition,
    Demographics,
    Medication,
    OrganFunction,
    PatientContext,
    RiskFlag,
)

logger = logging.getLogger(__name__)


# Thresholds
RENAL_ADJUST_EGFR = 60.0
SEVERE_RENAL_EGFR = 30.0
HEPATIC_ALT_LIMIT = 100.0
POLYPHARMACY_COUNT = 5
ELDERLY_AGE = 65

# Conditions where NSAIDs should be avoided
NSAID_AVOID_CONDITIONS = [
    "asthma",
    "gi bleed",
    "gastrointestinal bleed",
    "peptic ulcer",
]

# ICD-10 Z33 (pregnant state) and chapter O (pregnancy, childbirth)
_PREGNANCY_CODE = re.compile(r"^(Z33|O\d)", re.IGNORECASE)


def ckd_stage_for_egfr(egfr: float | None) -> str | None:
    """KDIGO CKD stage for an eGFR in mL/min/1.73m2."""
    if egfr is None:
        return None
    if egfr >= 90:
        return "Normal"
    if egfr >= 60:
        return "2"
    if egfr >= 45:
        return "3a"
    if egfr >= 30:
        return "3b"
    if egfr >= 15:
        return "4"
    return "5"


def _active(conditions: tuple[Condition, ...]) -> list[Condition]:
    return [c for c in conditions if c.status == "active"]


def _is_pregnancy_condition(condition: Condition) -> bool:
    return bool(_PREGNANCY_CODE.match(condition.code.strip())) or (
        "pregnan" in condition.display.lower()
    )


def derive_risk_flags(context: PatientContext) -> frozenset[RiskFlag]:
    """Compute risk flags from demographics, conditions, meds, allergies and labs.

    Args:
        context: Patient context (risk_flags field is ignored)

    Returns:
        Frozen set of RiskFlag values
    """
    flags: set[RiskFlag] = set()
    organ = context.organ_function

    if organ.egfr is not None:
        if organ.egfr < RENAL_ADJUST_EGFR:
            flags.add(RiskFlag.RENAL_DOSE_ADJUST)
        if organ.egfr < SEVERE_RENAL_EGFR:
            flags.add(RiskFlag.SEVERE_RENAL_IMPAIRMENT)

    if organ.alt is not None and organ.alt > HEPATIC_ALT_LIMIT:
        flags.add(RiskFlag.HEPATIC_IMPAIRMENT)

    if len(context.medications) >= POLYPHARMACY_COUNT:
        flags.add(RiskFlag.POLYPHARMACY)

    allergy_classes: set[DrugClass] = set()
    for allergy in context.allergies:
        if allergy.substance.strip():
            allergy_classes.update(classify(allergy.substance))

    if context.allergies:
        flags.add(RiskFlag.ALLERGY_CHECK_REQUIRED)
    if DrugClass.PENICILLIN in allergy_classes:
        flags.add(RiskFlag.BETA_LACTAM_ALLERGY)

    active = _active(context.conditions)
    if DrugClass.NSAID in allergy_classes or any(
        term in c.display.lower() for c in active for term in NSAID_AVOID_CONDITIONS
    ):
        flags.add(RiskFlag.NSAID_AVOID)

    if context.demographics.age >= ELDERLY_AGE:
        flags.add(RiskFlag.ELDERLY_PATIENT)

    if any(_is_pregnancy_condition(c) for c in active):
        flags.add(RiskFlag.PREGNANCY)

    return frozenset(flags)


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def build_patient_context(record: dict) -> PatientContext:
    """Build a PatientContext from a plain patient record.

    The record shape is the one used by the in-memory source and by
    fixtures:

        {
            "patient_id": "PT001",
            "demographics": {"name": ..., "age": 62, "sex": "M", "weight_kg": 78},
            "conditions": [{"code": "E11", "display": "...", "status": "active"}],
            "medications": [{"drug": "Metformin", "dose": "500mg", "frequency": "BD"}],
            "allergies": [{"substance": "Penicillin", "severity": "severe", "verified": True}],
            "labs": {"egfr": 48, "creatinine": 1.6, "alt": 32, "ast": 28},
        }

    Raises:
        KeyError: if patient_id or demographics.age is missing
        ValueError: if a numeric field cannot be parsed
    """
    demo = record["demographics"]
    labs = record.get("labs") or {}

    return PatientContext(
        patient_id=str(record["patient_id"]),
        demographics=Demographics(
            age=float(demo["age"]),
            sex=demo.get("sex") or "unknown",
            weight_kg=_optional_float(demo.get("weight_kg")),
            name=demo.get("name") or "",
        ),
        conditions=tuple(
            Condition(
                code=c.get("code", ""),
                display=c.get("display", ""),
                status=c.get("status", "active"),
            )
            for c in record.get("conditions", [])
        ),
        medications=tuple(
            Medication(
                drug=m["drug"],
                dose=m.get("dose", ""),
                frequency=m.get("frequency", ""),
            )
            for m in record.get("medications", [])
        ),
        allergies=tuple(
            Allergy(
                substance=a["substance"],
                severity=a.get("severity", "unknown"),
                verified=bool(a.get("verified", False)),
                reaction=a.get("reaction"),
            )
            for a in record.get("allergies", [])
        ),
        organ_function=OrganFunction(
            egfr=_optional_float(labs.get("egfr")),
            creatinine=_optional_float(labs.get("creatinine")),
            alt=_optional_float(labs.get("alt")),
            ast=_optional_float(labs.get("ast")),
        ),
    )
