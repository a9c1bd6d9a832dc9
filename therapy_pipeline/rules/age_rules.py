"""Age-based rules: pediatric fluoroquinolone use and Beers criteria.

Both produce warnings only, never hard blocks.
"""

import logging

from ..drug_classes import DrugClass, classify, matches_term
from ..models import (
    FindingKind,
    FindingSeverity,
    PatientContext,
    SafetyFinding,
)
from ..safety_engine import BaseRuleModule

logger = logging.getLogger(__name__)


PEDIATRIC_AGE = 18
GERIATRIC_AGE = 65

# AGS Beers Criteria (potentially inappropriate in older adults)
BEERS_CRITERIA = [
    "benzodiazepine",
    "diazepam",
    "lorazepam",
    "alprazolam",
    "diphenhydramine",
    "hydroxyzine",
    "meclizine",
    "promethazine",
]


class AgeRules(BaseRuleModule):
    """Pediatric and geriatric cautions."""

    name = "age"

    def check_drug(self, context: PatientContext, drug_name: str) -> list[SafetyFinding]:
        findings = []
        age = context.demographics.age

        if age < PEDIATRIC_AGE and DrugClass.FLUOROQUINOLONE in classify(drug_name):
            findings.append(
                SafetyFinding(
                    kind=FindingKind.AGE,
                    severity=FindingSeverity.WARNING,
                    message=(
                        f"Fluoroquinolone in patient aged {age:g}: "
                        "risk of cartilage and tendon toxicity."
                    ),
                    drug=drug_name,
                    recommendation="Reserve for infections without a suitable alternative.",
                    source="AAP Clinical Report 2016",
                )
            )

        if age >= GERIATRIC_AGE:
            term = next((t for t in BEERS_CRITERIA if matches_term(drug_name, t)), None)
            if term:
                findings.append(
                    SafetyFinding(
                        kind=FindingKind.AGE,
                        severity=FindingSeverity.WARNING,
                        message=(
                            f"{drug_name} is on the Beers list for patients aged "
                            f"{GERIATRIC_AGE}+ (falls, sedation, anticholinergic burden)."
                        ),
                        drug=drug_name,
                        recommendation="Use the lowest effective dose or an alternative.",
                        source="AGS Beers Criteria 2023",
                    )
                )

        return findings
