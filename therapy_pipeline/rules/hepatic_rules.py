"""Hepatotoxicity cautions for patients with hepatic impairment."""

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


HEPATOTOXIC_DRUGS = [
    "paracetamol",
    "acetaminophen",
    "isoniazid",
    "ketoconazole",
    "methotrexate",
    "amoxicillin-clavulanate",
]


class HepaticRules(BaseRuleModule):
    name = "hepatic"

    def check_drug(self, context: PatientContext, drug_name: str) -> list[SafetyFinding]:
        if not context.has_flag(RiskFlag.HEPATIC_IMPAIRMENT):
            return []

        if not any(matches_term(drug_name, term) for term in HEPATOTOXIC_DRUGS):
            return []

        return [
            SafetyFinding(
                kind=FindingKind.HEPATIC,
                severity=FindingSeverity.WARNING,
                message=(
                    f"{drug_name} is hepatotoxic; ALT {context.organ_function.alt:g} "
                    "indicates hepatic impairment."
                ),
                drug=drug_name,
                recommendation="Reduce dose and monitor liver function.",
                source="Hepatotoxic drug list",
            )
        ]
