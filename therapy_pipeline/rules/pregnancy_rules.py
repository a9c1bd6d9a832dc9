"""Pregnancy contraindication rules.

Only evaluated when the patient carries the pregnancy risk flag.
"""

import logging

from ..drug_classes import matches_term
from ..models import (
    FindingKind,
    FindingSeverity,
    PatientContext,
    RiskFlag,
    SafetyFinding,
)
from ..safety_engine import BaseRuleModule

logger = logging.getLogger(__name__)


# Drugs and classes contraindicated in pregnancy
PREGNANCY_CONTRAINDICATED = [
    "warfarin",
    "methotrexate",
    "isotretinoin",
    "misoprostol",
    "valproate",
    "ace inhibitors",
    "arbs",
    "statins",
    "tetracyclines",
    "fluoroquinolones",
    "trimethoprim",
]


class PregnancyRules(BaseRuleModule):
    """Block drugs contraindicated in pregnancy."""

    name = "pregnancy"

    def check_drug(self, context: PatientContext, drug_name: str) -> list[SafetyFinding]:
        if not context.has_flag(RiskFlag.PREGNANCY):
            return []

        for term in PREGNANCY_CONTRAINDICATED:
            if matches_term(drug_name, term):
                logger.info(f"Pregnancy contraindication: {drug_name} ({term})")
                return [
                    SafetyFinding(
                        kind=FindingKind.PREGNANCY,
                        severity=FindingSeverity.HARD_BLOCK,
                        message=f"{drug_name} is contraindicated in pregnancy ({term}).",
                        drug=drug_name,
                        recommendation="Select a pregnancy-compatible alternative.",
                        source="Pregnancy contraindication list",
                    )
                ]
        return []
