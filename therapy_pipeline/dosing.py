"""Dose calculation for candidate therapies.

Base dose, frequency and duration come from a static table. Renal, weight
and age overrides may change those values, and every override appends a
human-readable note to the adjustment list.
"""

import logging
import re
from dataclasses import dataclass, field

from .drug_classes import DrugClass, classify
from .models import PatientContext

logger = logging.getLogger(__name__)


@dataclass
class DoseCalculation:
    """Calculated regimen for one drug."""
    dose: str
    frequency: str
    duration: str
    route: str = "oral"
    adjustments: list[str] = field(default_factory=list)


# Base adult oral regimens
DOSING_TABLE: dict[str, dict[str, str]] = {
    # Antibiotics
    "amoxicillin": {"dose": "500mg", "frequency": "TDS", "duration": "7 days"},
    "amoxicillin-clavulanate": {"dose": "625mg", "frequency": "TDS", "duration": "7 days"},
    "azithromycin": {"dose": "500mg", "frequency": "OD", "duration": "3 days"},
    "cefuroxime": {"dose": "500mg", "frequency": "BD", "duration": "5 days"},
    "cefixime": {"dose": "200mg", "frequency": "BD", "duration": "7 days"},
    "levofloxacin": {"dose": "500mg", "frequency": "OD", "duration": "5 days"},
    "ciprofloxacin": {"dose": "500mg", "frequency": "BD", "duration": "5 days"},
    "doxycycline": {"dose": "100mg", "frequency": "BD", "duration": "5 days"},
    "nitrofurantoin": {"dose": "100mg", "frequency": "BD", "duration": "5 days"},
    "trimethoprim-sulfamethoxazole": {"dose": "960mg", "frequency": "BD", "duration": "3 days"},
    # Antihypertensives
    "amlodipine": {"dose": "5mg", "frequency": "OD", "duration": "ongoing"},
    "losartan": {"dose": "50mg", "frequency": "OD", "duration": "ongoing"},
    "lisinopril": {"dose": "10mg", "frequency": "OD", "duration": "ongoing"},
    "atenolol": {"dose": "50mg", "frequency": "OD", "duration": "ongoing"},
    "hydrochlorothiazide": {"dose": "12.5mg", "frequency": "OD", "duration": "ongoing"},
    "telmisartan": {"dose": "40mg", "frequency": "OD", "duration": "ongoing"},
    # Antidiabetics
    "metformin": {"dose": "500mg", "frequency": "BD", "duration": "ongoing"},
    "glimepiride": {"dose": "1mg", "frequency": "OD", "duration": "ongoing"},
    "sitagliptin": {"dose": "100mg", "frequency": "OD", "duration": "ongoing"},
    "empagliflozin": {"dose": "10mg", "frequency": "OD", "duration": "ongoing"},
    "dapagliflozin": {"dose": "10mg", "frequency": "OD", "duration": "ongoing"},
    "pioglitazone": {"dose": "15mg", "frequency": "OD", "duration": "ongoing"},
    # Analgesics
    "paracetamol": {"dose": "650mg", "frequency": "TDS", "duration": "3 days"},
    "paracetamol/codeine": {"dose": "500/30mg", "frequency": "QDS", "duration": "3 days"},
    "tramadol": {"dose": "50mg", "frequency": "QDS", "duration": "3 days"},
    "ibuprofen": {"dose": "400mg", "frequency": "TDS", "duration": "3 days"},
    "naproxen": {"dose": "250mg", "frequency": "BD", "duration": "3 days"},
    "diclofenac": {"dose": "50mg", "frequency": "TDS", "duration": "3 days"},
    # Acid suppression
    "pantoprazole": {"dose": "40mg", "frequency": "OD", "duration": "14 days"},
    "omeprazole": {"dose": "20mg", "frequency": "OD", "duration": "14 days"},
    "rabeprazole": {"dose": "20mg", "frequency": "OD", "duration": "14 days"},
    "esomeprazole": {"dose": "20mg", "frequency": "OD", "duration": "14 days"},
    "famotidine": {"dose": "20mg", "frequency": "BD", "duration": "14 days"},
}

# Renal overrides: first matching band applies per drug
RENAL_DOSE_OVERRIDES = [
    {"drug": "cefuroxime", "below": 50, "dose": "250mg",
     "note": "Dose reduced to 250mg for eGFR < 50"},
    {"drug": "levofloxacin", "below": 50, "dose": "250mg", "frequency": "OD",
     "note": "Dose reduced to 250mg OD for renal impairment (eGFR < 50)"},
    {"drug": "ciprofloxacin", "below": 50, "dose": "250mg",
     "note": "Dose reduced to 250mg for renal impairment (eGFR < 50)"},
    {"drug": "amoxicillin", "below": 30, "frequency": "BD",
     "note": "Frequency reduced to BD for eGFR < 30"},
    {"drug": "trimethoprim-sulfamethoxazole", "below": 30, "above": 15, "dose": "480mg",
     "note": "Dose halved to 480mg for eGFR 15-30"},
    {"drug": "metformin", "below": 45,
     "note": "eGFR < 45: do not exceed 1000mg/day; review if eGFR falls further"},
]

# Weight-based dosing below this body weight (kg)
LOW_WEIGHT_KG = 40.0

WEIGHT_BASED_DOSING = {
    "amoxicillin": {"mg_per_kg": 15, "max_mg": 500},
    "azithromycin": {"mg_per_kg": 10, "max_mg": 500},
    "paracetamol": {"mg_per_kg": 15, "max_mg": 650},
    "ibuprofen": {"mg_per_kg": 10, "max_mg": 400},
}


def find_dosing_key(drug_name: str) -> str | None:
    """Dosing table key for a drug; longest key wins so combinations match first."""
    drug_lower = drug_name.lower()
    for key in sorted(DOSING_TABLE, key=len, reverse=True):
        if key in drug_lower:
            return key
    return None


def parse_strength(dose: str) -> str | None:
    """Extract a normalized strength ("500mg") from a dose string."""
    match = re.search(r"(\d+(?:\.\d+)?(?:/\d+(?:\.\d+)?)?)\s*(mg|mcg|g|ml)\b", dose.lower())
    if not match:
        return None
    return f"{match.group(1)}{match.group(2)}"


def _apply_renal(calc: DoseCalculation, key: str, egfr: float | None) -> None:
    if egfr is None:
        return
    for override in RENAL_DOSE_OVERRIDES:
        if not key.startswith(override["drug"]):
            continue
        if egfr >= override["below"]:
            continue
        if "above" in override and egfr < override["above"]:
            continue
        if "dose" in override:
            calc.dose = override["dose"]
        if "frequency" in override:
            calc.frequency = override["frequency"]
        calc.adjustments.append(override["note"])
        return


def _apply_weight(calc: DoseCalculation, key: str, weight_kg: float | None) -> None:
    if weight_kg is None or weight_kg >= LOW_WEIGHT_KG:
        return
    rule = WEIGHT_BASED_DOSING.get(key)
    if rule is None:
        return
    dose_mg = min(round(weight_kg * rule["mg_per_kg"]), rule["max_mg"])
    calc.dose = f"{dose_mg}mg"
    calc.adjustments.append(
        f"Weight-based dose: {rule['mg_per_kg']} mg/kg x {weight_kg:g} kg = {dose_mg}mg "
        f"(max {rule['max_mg']}mg)"
    )


def _apply_age(calc: DoseCalculation, drug_name: str, age: float) -> None:
    if age >= 65 and DrugClass.FLUOROQUINOLONE in classify(drug_name):
        calc.adjustments.append("Monitor for tendinopathy in elderly")


def calculate_dose(drug_name: str, context: PatientContext) -> DoseCalculation | None:
    """Calculate the regimen for a drug in this patient.

    Args:
        drug_name: Generic name
        context: Patient context (eGFR, weight, age)

    Returns:
        DoseCalculation, or None if the drug has no dosing data
    """
    key = find_dosing_key(drug_name)
    if key is None:
        logger.info(f"No dosing data for {drug_name}")
        return None

    base = DOSING_TABLE[key]
    calc = DoseCalculation(
        dose=base["dose"],
        frequency=base["frequency"],
        duration=base["duration"],
    )

    _apply_weight(calc, key, context.demographics.weight_kg)
    _apply_renal(calc, key, context.organ_function.egfr)
    _apply_age(calc, drug_name, context.demographics.age)

    return calc
