"""Candidate therapy generation.

Maps a clinical intent to a bounded, confidence-ranked set of candidate
therapies:

1. Classify the intent text to one indication (keyword table).
2. Walk the indication's preferred then alternative drugs, dropping any that
   fail the allergy pre-screen or have no dosing data.
3. Calculate the regimen for the first N survivors.

An empty result is a normal outcome, not an error.
"""

import logging
from dataclasses import dataclass

from .config import Config
from .dosing import calculate_dose
from .drug_classes import DrugClass, classify
from .errors import InvariantViolation
from .indications import IndicationMapping, classify_intent
from .models import CandidateTherapy, PatientContext, PrescreenExclusion, RiskFlag
from .safety_engine import prescreen_drug

logger = logging.getLogger(__name__)


# Confidence by generation rank
TOP_CONFIDENCE = 0.85
CONFIDENCE_STEP = 0.15
MIN_CONFIDENCE = 0.10


def confidence_for_rank(rank: int) -> float:
    return max(round(TOP_CONFIDENCE - CONFIDENCE_STEP * rank, 2), MIN_CONFIDENCE)


@dataclass(frozen=True)
class GenerationResult:
    """Output of one generation batch."""
    indication: IndicationMapping | None
    candidates: tuple[CandidateTherapy, ...] = ()
    exclusions: tuple[PrescreenExclusion, ...] = ()


def validate_batch(candidates: tuple[CandidateTherapy, ...] | list[CandidateTherapy]) -> None:
    """Check that a batch is screenable.

    Raises:
        InvariantViolation: if a candidate lacks dose/frequency or confidence
            increases with rank
    """
    for candidate in candidates:
        if not candidate.is_valid:
            raise InvariantViolation(
                f"Candidate {candidate.generic_name} has no dose/frequency"
            )
    for previous, current in zip(candidates, candidates[1:]):
        if current.confidence > previous.confidence:
            raise InvariantViolation(
                f"Confidence increases from {previous.generic_name} "
                f"({previous.confidence}) to {current.generic_name} ({current.confidence})"
            )


class CandidateGenerator:
    """Generates ranked candidate therapies for a clinical intent."""

    def __init__(
        self,
        indications: dict[str, IndicationMapping] | None = None,
        max_candidates: int | None = None,
        prescreen: bool = True,
    ):
        """Initialize generator.

        Args:
            indications: Indication table. Uses the built-in table if None.
            max_candidates: Batch size bound. Uses config if None.
            prescreen: Drop allergy/cross-reactivity failures before dosing.
        """
        self.indications = indications
        self.max_candidates = max_candidates or Config.MAX_CANDIDATES
        self.prescreen = prescreen

    def generate(self, context: PatientContext, intent_text: str) -> GenerationResult:
        """Generate candidates for a patient and intent.

        Args:
            context: Patient context
            intent_text: Free-text clinical intent

        Returns:
            GenerationResult (candidates may be empty)
        """
        indication = classify_intent(intent_text, self.indications)
        if indication is None:
            logger.info(f"No indication matched intent: {intent_text!r}")
            return GenerationResult(indication=None)

        candidates: list[CandidateTherapy] = []
        exclusions: list[PrescreenExclusion] = []

        for drug in indication.drugs:
            if len(candidates) >= self.max_candidates:
                break

            if self.prescreen:
                blocks = prescreen_drug(context, drug)
                if blocks:
                    exclusions.append(
                        PrescreenExclusion(
                            drug=drug,
                            reason="Allergy or cross-reactivity",
                            findings=tuple(blocks),
                        )
                    )
                    continue

            calc = calculate_dose(drug, context)
            if calc is None:
                exclusions.append(PrescreenExclusion(drug=drug, reason="No dosing data"))
                continue

            rank = len(candidates)
            candidates.append(
                CandidateTherapy(
                    drug_class=indication.drug_class,
                    generic_name=drug,
                    dose=calc.dose,
                    frequency=calc.frequency,
                    duration=calc.duration,
                    route=calc.route,
                    confidence=confidence_for_rank(rank),
                    reasoning=tuple(
                        [f"Selected for {indication.display_name.lower()}"]
                        + calc.adjustments
                        + self._context_notes(context, drug)
                    ),
                    generation_rank=rank,
                )
            )

        validate_batch(candidates)

        logger.info(
            f"Generated {len(candidates)} candidate(s) for {indication.indication_id}, "
            f"{len(exclusions)} excluded"
        )
        return GenerationResult(
            indication=indication,
            candidates=tuple(candidates),
            exclusions=tuple(exclusions),
        )

    def _context_notes(self, context: PatientContext, drug: str) -> list[str]:
        notes = []
        egfr = context.organ_function.egfr
        if egfr is not None and context.has_flag(RiskFlag.RENAL_DOSE_ADJUST):
            notes.append(f"Renal function considered (eGFR: {egfr:g})")
        if context.has_flag(RiskFlag.BETA_LACTAM_ALLERGY):
            classes = classify(drug)
            if DrugClass.PENICILLIN not in classes and DrugClass.CEPHALOSPORIN not in classes:
                notes.append("Non-beta-lactam selected due to documented allergy")
        return notes
