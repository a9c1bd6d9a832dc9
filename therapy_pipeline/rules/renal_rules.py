"""Renal adjustment rules.

Each drug has eGFR tiers ordered by descending threshold. The first tier
whose threshold exceeds the patient's eGFR is applied and evaluation for
that drug stops; overlapping tiers are never combined. Because of that
first-match policy an "avoid" tier is only reachable as the highest tier,
which is checked when this module is imported.
"""

import logging

from ..drug_classes import matches_term
from ..errors import InvariantViolation
from ..models import (
    FindingKind,
    FindingSeverity,
    PatientContext,
    SafetyFinding,
)
from ..safety_engine import BaseRuleModule

logger = logging.getLogger(__name__)


ACTION_SEVERITY = {
    "avoid": FindingSeverity.HARD_BLOCK,
    "reduce": FindingSeverity.WARNING,
    "monitor": FindingSeverity.WARNING,
}

# eGFR tiers in mL/min/1.73m2. Keys may be drug names or class labels.
RENAL_ADJUSTMENTS: dict[str, list[dict]] = {
    # No 45 "reduce" tier: under first-match it would shadow the avoid tier.
    # The eGFR 30-44 dose cap is applied by dosing.RENAL_DOSE_OVERRIDES instead,
    # so metformin in that band gets no renal finding.
    "metformin": [
        {"threshold": 30, "action": "avoid", "note": "Contraindicated: lactic acidosis risk"},
    ],
    "nitrofurantoin": [
        {"threshold": 30, "action": "avoid", "note": "Contraindicated: ineffective and neuropathy risk"},
    ],
    "nsaids": [
        {"threshold": 30, "action": "avoid", "note": "Contraindicated: risk of acute kidney injury"},
    ],
    "empagliflozin": [
        {"threshold": 30, "action": "avoid", "note": "Not recommended for glycaemic control"},
    ],
    "gabapentin": [
        {"threshold": 60, "action": "reduce", "note": "Max 1400mg/day"},
        {"threshold": 30, "action": "reduce", "note": "Max 700mg/day"},
        {"threshold": 15, "action": "reduce", "note": "Max 300mg/day"},
    ],
    "levofloxacin": [
        {"threshold": 50, "action": "reduce", "note": "Reduce dose: 250mg daily after loading"},
        {"threshold": 20, "action": "reduce", "note": "Reduce dose: 250mg every 48h"},
    ],
    "ciprofloxacin": [
        {"threshold": 30, "action": "reduce", "note": "Reduce dose: 250-500mg every 24h"},
    ],
    "gentamicin": [
        {"threshold": 60, "action": "monitor", "note": "Extend interval, monitor levels"},
        {"threshold": 30, "action": "reduce", "note": "Significant dose reduction required"},
    ],
    "vancomycin": [
        {"threshold": 50, "action": "monitor", "note": "Monitor troughs, AUC-guided dosing"},
        {"threshold": 30, "action": "reduce", "note": "Extend interval"},
    ],
    "acyclovir": [
        {"threshold": 50, "action": "reduce", "note": "Extend interval to every 12h"},
        {"threshold": 25, "action": "reduce", "note": "Extend interval to every 24h"},
    ],
    "amoxicillin": [
        {"threshold": 30, "action": "reduce", "note": "Max 500mg every 12h"},
        {"threshold": 10, "action": "reduce", "note": "Max 500mg every 24h"},
    ],
    "cefuroxime": [
        {"threshold": 30, "action": "reduce", "note": "Extend interval to every 12h"},
        {"threshold": 10, "action": "reduce", "note": "Extend interval to every 24h"},
    ],
    "trimethoprim-sulfamethoxazole": [
        {"threshold": 30, "action": "reduce", "note": "Use 50% of usual dose"},
    ],
}


def _validate_tables(tables: dict[str, list[dict]]) -> dict[str, list[dict]]:
    """Sort tiers by descending threshold and reject unreachable avoid tiers."""
    validated = {}
    for drug, tiers in tables.items():
        ordered = sorted(tiers, key=lambda t: t["threshold"], reverse=True)
        for index, tier in enumerate(ordered):
            if tier["action"] not in ACTION_SEVERITY:
                raise InvariantViolation(
                    f"Unknown renal action '{tier['action']}' for {drug}"
                )
            if tier["action"] == "avoid" and index > 0:
                raise InvariantViolation(
                    f"Renal 'avoid' tier at eGFR {tier['threshold']} for {drug} is "
                    f"unreachable below the {ordered[0]['threshold']} tier"
                )
        validated[drug] = ordered
    return validated


RENAL_TIERS = _validate_tables(RENAL_ADJUSTMENTS)


def find_renal_tiers(drug_name: str) -> tuple[str, list[dict]] | None:
    """Find the renal table for a drug (longest matching key wins)."""
    for key in sorted(RENAL_TIERS, key=len, reverse=True):
        if matches_term(drug_name, key):
            return key, RENAL_TIERS[key]
    return None


def applicable_tier(tiers: list[dict], egfr: float) -> dict | None:
    """First tier, in descending threshold order, whose threshold exceeds eGFR."""
    for tier in tiers:
        if tier["threshold"] > egfr:
            return tier
    return None


class RenalAdjustmentRules(BaseRuleModule):
    """Flag candidates that need renal adjustment or must be avoided."""

    name = "renal"

    def check_drug(self, context: PatientContext, drug_name: str) -> list[SafetyFinding]:
        egfr = context.organ_function.egfr
        if egfr is None:
            return []

        table = find_renal_tiers(drug_name)
        if table is None:
            return []

        _, tiers = table
        tier = applicable_tier(tiers, egfr)
        if tier is None:
            return []

        severity = ACTION_SEVERITY[tier["action"]]
        logger.info(
            f"Renal {tier['action']} for {drug_name}: eGFR {egfr} < {tier['threshold']}"
        )
        return [
            SafetyFinding(
                kind=FindingKind.RENAL,
                severity=severity,
                message=f"eGFR {egfr:g} < {tier['threshold']}: {tier['note']}",
                drug=drug_name,
                recommendation=(
                    "Select an alternative agent."
                    if tier["action"] == "avoid"
                    else f"{tier['action'].capitalize()}: {tier['note']}"
                ),
                source="Renal dosing table",
            )
        ]
