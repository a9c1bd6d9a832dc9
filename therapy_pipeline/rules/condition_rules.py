"""Condition-based cautions (NSAIDs with asthma, GI bleed or peptic ulcer)."""

import logging

from ..drug_classes import DrugClass, classify
from ..models import (
    FindingKind,
    FindingSeverity,
    PatientContext,
    RiskFlag,
    SafetyFinding,
)
from ..safety_engine import BaseRuleModule

logger = logging.getLogger(__name__)


class ConditionRules(BaseRuleModule):
    name = "condition"

    def check_drug(self, context: PatientContext, drug_name: str) -> list[SafetyFinding]:
        if not context.has_flag(RiskFlag.NSAID_AVOID):
            return []
        if DrugClass.NSAID not in classify(drug_name):
            return []

        return [
            SafetyFinding(
                kind=FindingKind.CONTRAINDICATION,
                severity=FindingSeverity.WARNING,
                message=(
                    f"{drug_name} is an NSAID; patient history (asthma, GI bleed, "
                    "peptic ulcer or NSAID allergy) advises avoidance."
                ),
                drug=drug_name,
                recommendation="Prefer paracetamol.",
                source="NSAID caution",
            )
        ]
