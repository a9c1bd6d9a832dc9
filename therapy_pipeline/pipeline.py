"""Therapy recommendation pipeline orchestrator.

Gating state machine:

    Generating -> Screening -> Ranking -> Resolving -> Decided

Transitions are strictly forward. Generating and Screening may short-circuit
to Decided with a blocked status; blocked decisions carry the findings that
caused them. Collaborator failures (stock, advisory) degrade to documented
fallbacks and are recorded on the decision instead of failing the run.
"""

import logging
import sqlite3
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from .availability import AvailabilityResolver
from .config import Config
from .errors import DegradedInput, InvariantViolation
from .generator import CandidateGenerator, GenerationResult, validate_batch
from .models import (
    AvailabilityRecord,
    CandidateEvaluation,
    CandidateTherapy,
    DecisionStatus,
    FindingSeverity,
    PatientContext,
    PipelineDecision,
    PipelineStage,
    PrescreenExclusion,
    SafetyFinding,
)
from .safety_engine import SafetyRulesEngine
from .sources.advisory import FALLBACK_REASONING
from .sources.base import AdvisoryTextGenerator, AuditSink, ClinicalDataSource, StockSource
from .sources.guard import guarded_call

logger = logging.getLogger(__name__)


def rank_by_confidence(candidates: list[CandidateTherapy]) -> list[CandidateTherapy]:
    """Stable sort by confidence desc; ties keep generation order."""
    return sorted(candidates, key=lambda c: -c.confidence)


def rank_candidates(
    candidates: list[CandidateTherapy],
    availability: tuple[AvailabilityRecord, ...] | list[AvailabilityRecord],
) -> list[CandidateTherapy]:
    """Final ordering: stable sort by (available desc, confidence desc).

    Args:
        candidates: Safe candidates
        availability: One record per candidate, same order

    Returns:
        Ranked candidates. Ties keep the input order.
    """
    if len(candidates) != len(availability):
        raise InvariantViolation(
            f"{len(candidates)} candidates but {len(availability)} availability records"
        )
    paired = list(zip(candidates, availability))
    paired.sort(key=lambda pair: (0 if pair[1].available else 1, -pair[0].confidence))
    return [candidate for candidate, _ in paired]


def aggregate_findings(evaluations: list[CandidateEvaluation]) -> tuple[SafetyFinding, ...]:
    """All findings ordered by candidate rank, then hard_block, warning, info."""
    findings: list[SafetyFinding] = []
    for evaluation in evaluations:
        findings.extend(evaluation.verdict.findings)
    return tuple(findings)


def prescreen_findings(exclusions: tuple[PrescreenExclusion, ...]) -> tuple[SafetyFinding, ...]:
    """Hard blocks carried by pre-screen exclusions, in exclusion order."""
    return tuple(
        finding
        for exclusion in exclusions
        for finding in exclusion.findings
        if finding.severity == FindingSeverity.HARD_BLOCK
    )


class _RunState:
    """Stage trail of one run; enforces forward-only transitions."""

    def __init__(self):
        self.stage: PipelineStage | None = None
        self.trail: list[PipelineStage] = []

    def advance(self, stage: PipelineStage) -> None:
        if self.stage is not None and stage.order <= self.stage.order:
            raise InvariantViolation(
                f"Illegal transition {self.stage.value} -> {stage.value}"
            )
        logger.info(f"Pipeline stage: {stage.value}")
        self.stage = stage
        self.trail.append(stage)


class TherapyPipeline:
    """Runs generation, safety screening, ranking and availability for one intent."""

    def __init__(
        self,
        clinical_source: ClinicalDataSource,
        stock_source: StockSource,
        advisor: AdvisoryTextGenerator | None = None,
        audit_sink: AuditSink | None = None,
        engine: SafetyRulesEngine | None = None,
        generator: CandidateGenerator | None = None,
        resolver: AvailabilityResolver | None = None,
        screening_workers: int | None = None,
        advisory_timeout: float | None = None,
    ):
        """Initialize pipeline.

        Args:
            clinical_source: Patient context source
            stock_source: Pharmacy stock source
            advisor: Optional advisory text generator
            audit_sink: Optional durable store for decisions
            engine: Safety engine (default rule set if None)
            generator: Candidate generator (default tables if None)
            resolver: Availability resolver (built from stock_source if None)
            screening_workers: Max concurrent safety evaluations
            advisory_timeout: Seconds before advisory enrichment is abandoned
        """
        self.clinical_source = clinical_source
        self.stock_source = stock_source
        self.advisor = advisor
        self.audit_sink = audit_sink
        self.engine = engine or SafetyRulesEngine()
        self.generator = generator or CandidateGenerator()
        self.resolver = resolver or AvailabilityResolver(stock_source, engine=self.engine)
        self.screening_workers = screening_workers or Config.SCREENING_WORKERS
        self.advisory_timeout = advisory_timeout or Config.ADVISORY_TIMEOUT_SECONDS

    def run_pipeline(self, patient_id: str, intent_text: str) -> PipelineDecision:
        """Run the pipeline for a patient and clinical intent.

        Args:
            patient_id: Patient identifier in the clinical data source
            intent_text: Free-text clinical intent

        Returns:
            PipelineDecision

        Raises:
            PatientNotFoundError: if the patient does not exist
            InvariantViolation: on any broken pipeline invariant
        """
        context = self.clinical_source.fetch_context(patient_id)
        return self.evaluate(context, intent_text)

    def run_and_persist(
        self, patient_id: str, intent_text: str, actor_id: str
    ) -> tuple[PipelineDecision, str | None]:
        """Run the pipeline and hand the decision to the audit sink.

        Returns:
            (decision, audit ID or None if no sink or persistence failed)
        """
        decision = self.run_pipeline(patient_id, intent_text)
        if self.audit_sink is None or not actor_id:
            return decision, None

        try:
            audit_id = self.audit_sink.persist(decision, actor_id)
        except (sqlite3.Error, OSError, ValueError) as e:
            logger.error(f"Failed to persist decision {decision.decision_id}: {e}", exc_info=True)
            return decision, None
        return decision, audit_id

    def evaluate(self, context: PatientContext, intent_text: str) -> PipelineDecision:
        """Run the state machine on an already-fetched patient context."""
        state = _RunState()
        degradations: list[DegradedInput] = []

        # Generating
        state.advance(PipelineStage.GENERATING)
        generation = self.generator.generate(context, intent_text)
        if not generation.candidates:
            # Every drug removed by the allergy pre-screen counts as unsafe
            blocking = prescreen_findings(generation.exclusions)
            if blocking:
                logger.info(
                    f"Pre-screen removed every candidate for {context.patient_id}"
                )
            return self._decide(
                state, context, intent_text, generation,
                status=(
                    DecisionStatus.BLOCKED_ALL_UNSAFE if blocking
                    else DecisionStatus.BLOCKED_NO_CANDIDATES
                ),
                findings=blocking,
                degradations=degradations,
            )
        validate_batch(generation.candidates)
        candidates = self._enrich(context, generation, intent_text, degradations)

        # Screening
        state.advance(PipelineStage.SCREENING)
        evaluations = self._screen(context, candidates)
        safe = [e.candidate for e in evaluations if e.verdict.passed]
        if not safe:
            logger.info(f"All {len(evaluations)} candidate(s) unsafe for {context.patient_id}")
            return self._decide(
                state, context, intent_text, generation,
                status=DecisionStatus.BLOCKED_ALL_UNSAFE,
                evaluations=evaluations,
                degradations=degradations,
            )

        # Ranking
        state.advance(PipelineStage.RANKING)
        ranked = rank_by_confidence(safe)

        # Resolving
        state.advance(PipelineStage.RESOLVING)
        indication_id = generation.indication.indication_id if generation.indication else None
        availability, stock_degradations = self.resolver.resolve(context, ranked, indication_id)
        degradations.extend(stock_degradations)
        final = rank_candidates(ranked, availability)

        return self._decide(
            state, context, intent_text, generation,
            status=DecisionStatus.ACCEPTED,
            evaluations=evaluations,
            ranked=final,
            availability=availability,
            degradations=degradations,
        )

    def _enrich(
        self,
        context: PatientContext,
        generation: GenerationResult,
        intent_text: str,
        degradations: list[DegradedInput],
    ) -> list[CandidateTherapy]:
        """Append advisory reasoning to every candidate. Never changes drug or dose."""
        bullets: list[str] = []
        if self.advisor is not None and generation.indication is not None:
            indication = generation.indication.display_name
            result = guarded_call(
                source="advisory",
                operation="enrich",
                func=lambda: self.advisor.enrich(context, indication, intent_text),
                fallback=[],
                timeout=self.advisory_timeout,
                fallback_description=FALLBACK_REASONING,
            )
            if result.degraded:
                degradations.append(result.degraded)
            bullets = list(result.value or [])

        if not bullets:
            bullets = [FALLBACK_REASONING]
        return [candidate.with_reasoning(bullets) for candidate in generation.candidates]

    def _screen(
        self, context: PatientContext, candidates: list[CandidateTherapy]
    ) -> list[CandidateEvaluation]:
        """Evaluate every candidate concurrently and wait for all verdicts."""
        for candidate in candidates:
            if not candidate.is_valid:
                raise InvariantViolation(
                    f"Candidate {candidate.generic_name} entered screening without dose/frequency"
                )

        evaluated_at = datetime.now(timezone.utc)
        workers = max(1, min(self.screening_workers, len(candidates)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                executor.submit(self.engine.verdict, context, candidate, evaluated_at)
                for candidate in candidates
            ]
            verdicts = [future.result() for future in futures]

        return [
            CandidateEvaluation(candidate=candidate, verdict=verdict)
            for candidate, verdict in zip(candidates, verdicts)
        ]

    def _decide(
        self,
        state: _RunState,
        context: PatientContext,
        intent_text: str,
        generation: GenerationResult,
        status: DecisionStatus,
        evaluations: list[CandidateEvaluation] | None = None,
        ranked: list[CandidateTherapy] | None = None,
        availability: tuple[AvailabilityRecord, ...] = (),
        degradations: list[DegradedInput] | None = None,
        findings: tuple[SafetyFinding, ...] = (),
    ) -> PipelineDecision:
        state.advance(PipelineStage.DECIDED)
        evaluations = evaluations or []
        ranked = ranked or []
        findings = findings or aggregate_findings(evaluations)

        decision = PipelineDecision(
            decision_id=f"PD-{uuid.uuid4().hex[:12].upper()}",
            patient_id=context.patient_id,
            intent_text=intent_text,
            status=status,
            indication=generation.indication.indication_id if generation.indication else None,
            chosen=ranked[0] if ranked else None,
            alternatives=tuple(ranked[1:]),
            findings=findings,
            evaluations=tuple(evaluations),
            availability=tuple(availability),
            prescreen_exclusions=generation.exclusions,
            degradations=tuple(degradations or []),
            stage_trail=tuple(state.trail),
            decided_at=datetime.now(timezone.utc),
            pipeline_version=Config.PIPELINE_VERSION,
        )
        logger.info(
            f"Decision {decision.decision_id} for {context.patient_id}: {status.value}"
            + (f", chosen {decision.chosen.generic_name}" if decision.chosen else "")
        )
        return decision
