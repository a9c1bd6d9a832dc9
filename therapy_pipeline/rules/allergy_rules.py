"""Allergy checking and cross-reactivity rules.

Checks for direct allergy matches and class cross-reactivity. Any match
hard-blocks the candidate, except penicillin-allergy cross-reactivity to
cephalosporins, which is annotated as a warning.
"""

import logging

from ..drug_classes import DrugClass, classify
from ..models import (
    Allergy,
    FindingKind,
    FindingSeverity,
    PatientContext,
    RiskFlag,
    SafetyFinding,
)
from ..safety_engine import BaseRuleModule

logger = logging.getLogger(__name__)


# Cross-reactivity rules between allergen class and candidate class
CROSS_REACTIVITY_RULES = [
    {
        "allergy_class": DrugClass.PENICILLIN,
        "cross_reactive_class": DrugClass.PENICILLIN,
        "severity": FindingSeverity.HARD_BLOCK,
        "message": "Penicillin allergy - all penicillins share the beta-lactam ring.",
        "recommendation": "Avoid all penicillins. Consider a macrolide, tetracycline or fluoroquinolone.",
        "source": "Class effect",
    },
    {
        "allergy_class": DrugClass.PENICILLIN,
        "cross_reactive_class": DrugClass.CEPHALOSPORIN,
        # ~1-2%, historically overestimated
        "severity": FindingSeverity.WARNING,
        "message": "Penicillin allergy with low (~1-2%) cross-reactivity to cephalosporins.",
        "recommendation": "Generally safe unless prior anaphylaxis. Monitor first dose.",
        "source": "AAAAI Practice Parameter Update 2010",
    },
    {
        "allergy_class": DrugClass.CEPHALOSPORIN,
        "cross_reactive_class": DrugClass.CEPHALOSPORIN,
        "severity": FindingSeverity.HARD_BLOCK,
        "message": "Cephalosporin allergy - cross-reactivity within class.",
        "recommendation": "Avoid cephalosporins.",
        "source": "Class effect",
    },
    {
        "allergy_class": DrugClass.SULFONAMIDE,
        "cross_reactive_class": DrugClass.SULFONAMIDE,
        "severity": FindingSeverity.HARD_BLOCK,
        "message": "Sulfonamide allergy - sulfonamide antibiotics contraindicated.",
        "recommendation": "Avoid trimethoprim-sulfamethoxazole and other sulfonamide antibiotics.",
        "source": "Class effect",
    },
    {
        "allergy_class": DrugClass.NSAID,
        "cross_reactive_class": DrugClass.NSAID,
        "severity": FindingSeverity.HARD_BLOCK,
        "message": "NSAID/aspirin allergy - cross-reactivity across COX inhibitors.",
        "recommendation": "Avoid NSAIDs. Paracetamol is usually tolerated.",
        "source": "Class effect",
    },
    {
        "allergy_class": DrugClass.ACE_INHIBITOR,
        "cross_reactive_class": DrugClass.ACE_INHIBITOR,
        "severity": FindingSeverity.HARD_BLOCK,
        "message": "ACE inhibitor allergy (angioedema risk) - class effect.",
        "recommendation": "Avoid all ACE inhibitors.",
        "source": "Class effect",
    },
    {
        "allergy_class": DrugClass.FLUOROQUINOLONE,
        "cross_reactive_class": DrugClass.FLUOROQUINOLONE,
        "severity": FindingSeverity.HARD_BLOCK,
        "message": "Fluoroquinolone allergy - high cross-reactivity within class.",
        "recommendation": "Avoid all fluoroquinolones.",
        "source": "Class effect",
    },
    {
        "allergy_class": DrugClass.MACROLIDE,
        "cross_reactive_class": DrugClass.MACROLIDE,
        "severity": FindingSeverity.HARD_BLOCK,
        "message": "Macrolide allergy - high cross-reactivity within class.",
        "recommendation": "Avoid all macrolides.",
        "source": "Class effect",
    },
]


class AllergyRules(BaseRuleModule):
    """Check for drug allergies and cross-reactivity."""

    name = "allergy"

    def check_drug(self, context: PatientContext, drug_name: str) -> list[SafetyFinding]:
        """Check a drug against the patient's allergy list.

        Args:
            context: Patient context
            drug_name: Candidate generic name

        Returns:
            List of allergy findings
        """
        findings: list[SafetyFinding] = []
        allergies = [a for a in context.allergies if a.substance.strip()]

        for allergy in allergies:
            direct = self._check_direct_match(drug_name, allergy)
            if direct:
                findings.append(direct)
                continue  # Don't also flag cross-reactivity for direct match

            findings.extend(self._check_cross_reactivity(drug_name, allergy))

        findings.extend(self._check_beta_lactam(context, drug_name, findings))

        for finding in findings:
            logger.info(
                f"Allergy finding for {drug_name} ({finding.severity.value}): {finding.message}"
            )
        return findings

    def _check_direct_match(self, drug_name: str, allergy: Allergy) -> SafetyFinding | None:
        """Check for direct allergy to the candidate drug."""
        drug_lower = drug_name.lower()
        substance = allergy.substance.strip().lower()

        if substance in drug_lower or drug_lower in substance:
            reaction = f" (reaction: {allergy.reaction})" if allergy.reaction else ""
            return SafetyFinding(
                kind=FindingKind.ALLERGY,
                severity=FindingSeverity.HARD_BLOCK,
                message=(
                    f"Patient has documented {allergy.severity} allergy to "
                    f"{allergy.substance}{reaction}. Candidate: {drug_name}."
                ),
                drug=drug_name,
                recommendation="Select an alternative without allergy.",
                source="Patient allergy record",
            )
        return None

    def _check_cross_reactivity(self, drug_name: str, allergy: Allergy) -> list[SafetyFinding]:
        """Check for class cross-reactivity with one allergy."""
        findings = []

        drug_classes = classify(drug_name)
        if not drug_classes:
            return findings

        allergen_classes = classify(allergy.substance)
        for allergen_class in allergen_classes:
            for drug_class in drug_classes:
                rule = self._find_cross_reactivity_rule(allergen_class, drug_class)
                if not rule:
                    continue

                findings.append(
                    SafetyFinding(
                        kind=FindingKind.ALLERGY,
                        severity=rule["severity"],
                        message=f"{rule['message']} Allergen: {allergy.substance}.",
                        drug=drug_name,
                        recommendation=rule["recommendation"],
                        source=rule["source"],
                    )
                )

        return findings

    def _check_beta_lactam(
        self,
        context: PatientContext,
        drug_name: str,
        findings: list[SafetyFinding],
    ) -> list[SafetyFinding]:
        """Beta-lactam flag: penicillins always blocked, cephalosporins always annotated."""
        if not context.has_flag(RiskFlag.BETA_LACTAM_ALLERGY):
            return []

        drug_classes = classify(drug_name)
        extra = []

        if DrugClass.PENICILLIN in drug_classes and not any(
            f.severity == FindingSeverity.HARD_BLOCK for f in findings
        ):
            extra.append(
                SafetyFinding(
                    kind=FindingKind.ALLERGY,
                    severity=FindingSeverity.HARD_BLOCK,
                    message=f"Beta-lactam allergy on record. {drug_name} is a penicillin.",
                    drug=drug_name,
                    recommendation="Avoid all penicillins.",
                    source="Beta-lactam allergy flag",
                )
            )

        if DrugClass.CEPHALOSPORIN in drug_classes and not findings:
            extra.append(
                SafetyFinding(
                    kind=FindingKind.ALLERGY,
                    severity=FindingSeverity.WARNING,
                    message=(
                        f"Beta-lactam allergy on record. {drug_name} is a cephalosporin "
                        "with low (~1-2%) cross-reactivity."
                    ),
                    drug=drug_name,
                    recommendation="Generally safe unless prior anaphylaxis. Monitor first dose.",
                    source="Beta-lactam allergy flag",
                )
            )

        return extra

    def _find_cross_reactivity_rule(
        self, allergen_class: DrugClass, drug_class: DrugClass
    ) -> dict | None:
        for rule in CROSS_REACTIVITY_RULES:
            if (
                rule["allergy_class"] == allergen_class
                and rule["cross_reactive_class"] == drug_class
            ):
                return rule
        return None
