"""Deterministic safety rules engine.

Evaluates one (patient context, candidate therapy) pair against the static
rule tables and returns categorized findings. Evaluation does no I/O and
never raises: a rule module that fails is reported as a hard block so that
a broken rule cannot pass a candidate.
"""

import logging
from datetime import datetime

from .models import (
    CandidateTherapy,
    FindingKind,
    FindingSeverity,
    PatientContext,
    SafetyFinding,
    SafetyVerdict,
)

logger = logging.getLogger(__name__)


class BaseRuleModule:
    """Base class for rule modules."""

    name = "base"

    def evaluate(self, context: PatientContext, candidate: CandidateTherapy) -> list[SafetyFinding]:
        """Return safety findings for this candidate.

        Args:
            context: Patient context
            candidate: Candidate therapy under evaluation

        Returns:
            List of SafetyFinding objects (empty if nothing applies)
        """
        return self.check_drug(context, candidate.generic_name)

    def check_drug(self, context: PatientContext, drug_name: str) -> list[SafetyFinding]:
        raise NotImplementedError


def rule_failure_finding(rule_name: str, drug: str, error: Exception) -> SafetyFinding:
    """Hard block recorded in place of a rule module that raised."""
    return SafetyFinding(
        kind=FindingKind.CONTRAINDICATION,
        severity=FindingSeverity.HARD_BLOCK,
        message=f"Safety rule '{rule_name}' could not be evaluated: {error}",
        drug=drug,
        recommendation="Manual pharmacist review required before prescribing.",
        source=rule_name,
    )


def build_verdict(
    drug: str,
    findings: list[SafetyFinding],
    evaluated_at: datetime | None = None,
) -> SafetyVerdict:
    """Partition findings by severity into an all-or-nothing verdict."""
    hard_blocks = tuple(f for f in findings if f.severity == FindingSeverity.HARD_BLOCK)
    warnings = tuple(f for f in findings if f.severity == FindingSeverity.WARNING)
    info = tuple(f for f in findings if f.severity == FindingSeverity.INFO)

    return SafetyVerdict(
        drug=drug,
        passed=len(hard_blocks) == 0,
        hard_blocks=hard_blocks,
        warnings=warnings,
        info=info,
        evaluated_at=evaluated_at,
    )


class SafetyRulesEngine:
    """Evaluates candidate therapies against the safety rule tables."""

    def __init__(self, rules: list[BaseRuleModule] | None = None):
        """Initialize rules engine.

        Args:
            rules: Rule modules to run. Defaults to the full rule set.
        """
        self.rules: list[BaseRuleModule] = []
        if rules is not None:
            self.rules = list(rules)
        else:
            self._register_rules()

    def _register_rules(self) -> None:
        """Register all rule modules in priority order."""
        from .rules.allergy_rules import AllergyRules
        from .rules.age_rules import AgeRules
        from .rules.condition_rules import ConditionRules
        from .rules.hepatic_rules import HepaticRules
        from .rules.interaction_rules import DrugInteractionRules
        from .rules.pregnancy_rules import PregnancyRules
        from .rules.renal_rules import RenalAdjustmentRules

        self.rules = [
            AllergyRules(),           # Allergy and cross-reactivity (critical safety)
            DrugInteractionRules(),   # Drug-drug interactions
            RenalAdjustmentRules(),   # eGFR tiers
            PregnancyRules(),
            HepaticRules(),
            AgeRules(),               # Pediatric and Beers criteria, warnings only
            ConditionRules(),
        ]

    def evaluate(self, context: PatientContext, candidate: CandidateTherapy) -> list[SafetyFinding]:
        """Run all rules against one candidate.

        Args:
            context: Patient context
            candidate: Candidate therapy

        Returns:
            Deduplicated findings ordered hard_block, warning, info
        """
        findings: list[SafetyFinding] = []

        for rule_module in self.rules:
            try:
                findings.extend(rule_module.evaluate(context, candidate))
            except Exception as e:
                logger.error(
                    f"Error in {rule_module.__class__.__name__} for {candidate.generic_name}: {e}",
                    exc_info=True,
                )
                findings.append(
                    rule_failure_finding(rule_module.name, candidate.generic_name, e)
                )

        return self._deduplicate_findings(findings)

    def verdict(
        self,
        context: PatientContext,
        candidate: CandidateTherapy,
        evaluated_at: datetime | None = None,
    ) -> SafetyVerdict:
        """Evaluate a candidate and aggregate the findings into a verdict."""
        findings = self.evaluate(context, candidate)
        verdict = build_verdict(candidate.generic_name, findings, evaluated_at)
        if not verdict.passed:
            logger.info(
                f"{candidate.generic_name} blocked for {context.patient_id}: "
                f"{len(verdict.hard_blocks)} hard block(s)"
            )
        return verdict

    def _deduplicate_findings(self, findings: list[SafetyFinding]) -> list[SafetyFinding]:
        """Remove duplicate findings (same drug + kind + message).

        If duplicates differ in severity, keep the highest.
        """
        seen: dict[tuple[str, str, str], SafetyFinding] = {}

        for finding in findings:
            key = (finding.drug.lower(), finding.kind.value, finding.message)
            existing = seen.get(key)
            if existing is None or finding.severity.rank > existing.severity.rank:
                seen[key] = finding

        # Stable sort keeps rule priority order within a severity
        result = list(seen.values())
        result.sort(key=lambda f: f.severity.rank, reverse=True)
        return result


def prescreen_drug(context: PatientContext, drug_name: str) -> list[SafetyFinding]:
    """Cheap generator pre-screen: allergy and cross-reactivity only.

    Returns:
        Hard-block findings that should remove the drug before dose
        calculation. Warnings are left for the full engine.
    """
    from .rules.allergy_rules import AllergyRules

    findings = AllergyRules().check_drug(context, drug_name)
    return [f for f in findings if f.severity == FindingSeverity.HARD_BLOCK]
