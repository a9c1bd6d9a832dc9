"""Drug-drug interaction rules.

Checks a candidate against every current medication. A table entry applies
when either side matches the entry's drug and the other side matches one of
its interactors. Severity is taken verbatim from the table.
"""

import logging

from ..drug_classes import matches_term
from ..models import (
    FindingKind,
    FindingSeverity,
    PatientContext,
    SafetyFinding,
)
from ..safety_engine import BaseRuleModule

logger = logging.getLogger(__name__)


# Interactors may be drug names or class labels ("nsaids", "ace inhibitors")
DRUG_INTERACTIONS = [
    {
        "drug": "warfarin",
        "interacts_with": ["aspirin", "ibuprofen", "naproxen", "clopidogrel"],
        "severity": FindingSeverity.WARNING,
        "reason": "Increased bleeding risk",
        "recommendation": "Avoid if possible. If required, monitor INR closely and consider gastroprotection.",
        "source": "Stockley's Drug Interactions",
    },
    {
        "drug": "methotrexate",
        "interacts_with": ["trimethoprim", "nsaids", "penicillins"],
        "severity": FindingSeverity.HARD_BLOCK,
        "reason": "Reduced methotrexate clearance with risk of fatal bone marrow suppression",
        "recommendation": "Do not co-prescribe. Select an agent that does not impair methotrexate clearance.",
        "source": "MHRA Drug Safety Update",
    },
    {
        "drug": "lithium",
        "interacts_with": ["nsaids", "ace inhibitors", "arbs", "diuretics"],
        "severity": FindingSeverity.WARNING,
        "reason": "Increased lithium levels and toxicity risk",
        "recommendation": "Monitor lithium levels within 5-7 days of starting.",
        "source": "Stockley's Drug Interactions",
    },
    {
        "drug": "digoxin",
        "interacts_with": ["amiodarone", "verapamil", "quinidine", "clarithromycin"],
        "severity": FindingSeverity.WARNING,
        "reason": "Increased digoxin levels and toxicity risk",
        "recommendation": "Reduce digoxin dose and monitor levels.",
        "source": "Stockley's Drug Interactions",
    },
    {
        "drug": "simvastatin",
        "interacts_with": ["clarithromycin", "erythromycin", "itraconazole", "ketoconazole"],
        "severity": FindingSeverity.HARD_BLOCK,
        "reason": "CYP3A4 inhibition with risk of rhabdomyolysis",
        "recommendation": "Contraindicated. Use azithromycin or withhold simvastatin for the course.",
        "source": "FDA Drug Safety Communication 2011",
    },
    {
        "drug": "metformin",
        "interacts_with": ["contrast dye", "iodinated contrast"],
        "severity": FindingSeverity.WARNING,
        "reason": "Risk of contrast-induced lactic acidosis",
        "recommendation": "Withhold metformin 48 hours around contrast administration.",
        "source": "ACR Manual on Contrast Media",
    },
    {
        "drug": "clopidogrel",
        "interacts_with": ["omeprazole", "esomeprazole"],
        "severity": FindingSeverity.WARNING,
        "reason": "CYP2C19 inhibition reduces clopidogrel activation",
        "recommendation": "Prefer pantoprazole for gastroprotection.",
        "source": "FDA Drug Safety Communication 2009",
    },
]


class DrugInteractionRules(BaseRuleModule):
    """Check candidate therapy against current medications."""

    name = "interaction"

    def check_drug(self, context: PatientContext, drug_name: str) -> list[SafetyFinding]:
        """Check for drug-drug interactions.

        Args:
            context: Patient context with current medications
            drug_name: Candidate generic name

        Returns:
            List of interaction findings
        """
        findings: list[SafetyFinding] = []

        for med in context.medications:
            for rule in DRUG_INTERACTIONS:
                counterpart = self._match(rule, drug_name, med.drug)
                if counterpart is None:
                    continue

                findings.append(
                    SafetyFinding(
                        kind=FindingKind.INTERACTION,
                        severity=rule["severity"],
                        message=f"{drug_name} + {med.drug}: {rule['reason']}",
                        drug=drug_name,
                        recommendation=rule["recommendation"],
                        source=rule["source"],
                    )
                )
                logger.info(
                    f"DDI detected: {drug_name} + {med.drug} "
                    f"for {context.patient_id} ({rule['severity'].value})"
                )

        return findings

    def _match(self, rule: dict, candidate: str, current: str) -> str | None:
        """Return the matched interactor term if the rule applies in either direction."""
        if matches_term(current, rule["drug"]):
            for term in rule["interacts_with"]:
                if matches_term(candidate, term):
                    return term
        if matches_term(candidate, rule["drug"]):
            for term in rule["interacts_with"]:
                if matches_term(current, term):
                    return term
        return None
