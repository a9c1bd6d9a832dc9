"""Data models for the therapy recommendation pipeline.

Every record is a frozen dataclass. Stages never mutate each other's output;
they return new values.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

from .errors import DegradedInput, InvariantViolation

T = TypeVar("T")


class RiskFlag(str, Enum):
    """Risk tags derived from the rest of the patient context."""
    RENAL_DOSE_ADJUST = "renal_dose_adjust"
    SEVERE_RENAL_IMPAIRMENT = "severe_renal_impairment"
    HEPATIC_IMPAIRMENT = "hepatic_impairment"
    POLYPHARMACY = "polypharmacy"
    ALLERGY_CHECK_REQUIRED = "allergy_check_required"
    BETA_LACTAM_ALLERGY = "beta_lactam_allergy"
    NSAID_AVOID = "nsaid_avoid"
    ELDERLY_PATIENT = "elderly_patient"
    PREGNANCY = "pregnancy"


class FindingKind(str, Enum):
    """Category of safety finding."""
    INTERACTION = "interaction"
    ALLERGY = "allergy"
    RENAL = "renal"
    HEPATIC = "hepatic"
    PREGNANCY = "pregnancy"
    AGE = "age"
    CONTRAINDICATION = "contraindication"


class FindingSeverity(str, Enum):
    """Only HARD_BLOCK can exclude a candidate."""
    INFO = "info"
    WARNING = "warning"
    HARD_BLOCK = "hard_block"

    @property
    def rank(self) -> int:
        """Numeric rank (higher = more severe)."""
        return {
            FindingSeverity.HARD_BLOCK: 2,
            FindingSeverity.WARNING: 1,
            FindingSeverity.INFO: 0,
        }[self]


class EquivalenceType(str, Enum):
    SAME_SALT = "same_salt"
    SAME_STRENGTH = "same_strength"
    SAME_CLASS = "same_class"
    THERAPEUTIC_ALTERNATIVE = "therapeutic_alternative"


class DecisionStatus(str, Enum):
    ACCEPTED = "accepted"
    BLOCKED_NO_CANDIDATES = "blocked_no_candidates"
    BLOCKED_ALL_UNSAFE = "blocked_all_unsafe"


class ReviewAction(str, Enum):
    """What the prescriber did with a stored decision."""
    ACCEPTED = "accepted"
    MODIFIED = "modified"
    REJECTED = "rejected"
    WROTE_FROM_SCRATCH = "wrote_from_scratch"

    @property
    def review_status(self) -> str:
        if self in (ReviewAction.ACCEPTED, ReviewAction.WROTE_FROM_SCRATCH):
            return "approved"
        return self.value


class PipelineStage(str, Enum):
    """Orchestrator states, in their only legal order."""
    GENERATING = "generating"
    SCREENING = "screening"
    RANKING = "ranking"
    RESOLVING = "resolving"
    DECIDED = "decided"

    @property
    def order(self) -> int:
        return list(PipelineStage).index(self)


# =============================================================================
# Patient Context
# =============================================================================

@dataclass(frozen=True)
class Demographics:
    age: float
    sex: str = "unknown"       # M, F, Other, unknown
    weight_kg: float | None = None
    name: str = ""


@dataclass(frozen=True)
class Condition:
    code: str
    display: str
    status: str = "active"     # active, resolved, unknown


@dataclass(frozen=True)
class Medication:
    drug: str
    dose: str = ""
    frequency: str = ""


@dataclass(frozen=True)
class Allergy:
    substance: str
    severity: str = "unknown"  # mild, moderate, severe, unknown
    verified: bool = False
    reaction: str | None = None


@dataclass(frozen=True)
class OrganFunction:
    egfr: float | None = None
    creatinine: float | None = None
    alt: float | None = None
    ast: float | None = None

    @property
    def ckd_stage(self) -> str | None:
        """KDIGO CKD stage from eGFR."""
        from .context import ckd_stage_for_egfr
        return ckd_stage_for_egfr(self.egfr)


@dataclass(frozen=True)
class PatientContext:
    """Immutable snapshot of one patient, constructed once per pipeline run.

    risk_flags is not an init argument: it is derived from the other fields
    in __post_init__, so every construction (including dataclasses.replace)
    recomputes it.
    """
    patient_id: str
    demographics: Demographics
    conditions: tuple[Condition, ...] = ()
    medications: tuple[Medication, ...] = ()
    allergies: tuple[Allergy, ...] = ()
    organ_function: OrganFunction = field(default_factory=OrganFunction)
    risk_flags: frozenset[RiskFlag] = field(init=False, default=frozenset())

    def __post_init__(self):
        from .context import derive_risk_flags

        # Accept lists from callers but store tuples
        object.__setattr__(self, "conditions", tuple(self.conditions))
        object.__setattr__(self, "medications", tuple(self.medications))
        object.__setattr__(self, "allergies", tuple(self.allergies))
        object.__setattr__(self, "risk_flags", derive_risk_flags(self))

    def has_flag(self, flag: RiskFlag) -> bool:
        return flag in self.risk_flags

    def with_updates(self, **changes: Any) -> "PatientContext":
        """Return a new context with changes applied and flags recomputed."""
        if "risk_flags" in changes:
            raise InvariantViolation("risk_flags are derived and cannot be set")
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "patient_id": self.patient_id,
            "demographics": {
                "age": self.demographics.age,
                "sex": self.demographics.sex,
                "weight_kg": self.demographics.weight_kg,
            },
            "conditions": [
                {"code": c.code, "display": c.display, "status": c.status}
                for c in self.conditions
            ],
            "medications": [
                {"drug": m.drug, "dose": m.dose, "frequency": m.frequency}
                for m in self.medications
            ],
            "allergies": [
                {
                    "substance": a.substance,
                    "severity": a.severity,
                    "verified": a.verified,
                    "reaction": a.reaction,
                }
                for a in self.allergies
            ],
            "organ_function": {
                "egfr": self.organ_function.egfr,
                "ckd_stage": self.organ_function.ckd_stage,
                "creatinine": self.organ_function.creatinine,
                "alt": self.organ_function.alt,
                "ast": self.organ_function.ast,
            },
            "risk_flags": sorted(flag.value for flag in self.risk_flags),
        }


# =============================================================================
# Candidates and Safety
# =============================================================================

@dataclass(frozen=True)
class CandidateTherapy:
    """One proposed drug/dose/route awaiting safety and availability checks."""
    drug_class: str
    generic_name: str
    dose: str
    frequency: str
    duration: str
    route: str
    confidence: float
    reasoning: tuple[str, ...] = ()
    preferred_brand: str | None = None
    generation_rank: int = 0

    def __post_init__(self):
        object.__setattr__(self, "reasoning", tuple(self.reasoning))
        if not 0.0 <= self.confidence <= 1.0:
            raise InvariantViolation(
                f"Confidence {self.confidence} for {self.generic_name} outside [0, 1]"
            )

    @property
    def is_valid(self) -> bool:
        """A candidate without dose or frequency must never reach screening."""
        return bool(self.dose.strip()) and bool(self.frequency.strip())

    def with_reasoning(self, extra: list[str] | tuple[str, ...]) -> "CandidateTherapy":
        return replace(self, reasoning=self.reasoning + tuple(extra))

    def to_dict(self) -> dict:
        return {
            "drug_class": self.drug_class,
            "generic_name": self.generic_name,
            "preferred_brand": self.preferred_brand,
            "dose": self.dose,
            "frequency": self.frequency,
            "duration": self.duration,
            "route": self.route,
            "confidence": self.confidence,
            "reasoning": list(self.reasoning),
            "generation_rank": self.generation_rank,
        }


@dataclass(frozen=True)
class SafetyFinding:
    """A single deterministic safety finding for one drug."""
    kind: FindingKind
    severity: FindingSeverity
    message: str
    drug: str
    recommendation: str = ""
    source: str = ""

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
            "drug": self.drug,
            "recommendation": self.recommendation,
            "source": self.source,
        }


@dataclass(frozen=True)
class SafetyVerdict:
    """All-or-nothing aggregate of the findings for one candidate."""
    drug: str
    passed: bool
    hard_blocks: tuple[SafetyFinding, ...] = ()
    warnings: tuple[SafetyFinding, ...] = ()
    info: tuple[SafetyFinding, ...] = ()
    evaluated_at: datetime | None = None

    def __post_init__(self):
        partitions = (
            (self.hard_blocks, FindingSeverity.HARD_BLOCK),
            (self.warnings, FindingSeverity.WARNING),
            (self.info, FindingSeverity.INFO),
        )
        for findings, severity in partitions:
            if any(f.severity != severity for f in findings):
                raise InvariantViolation(
                    f"Verdict for {self.drug} has a finding in the wrong {severity.value} partition"
                )
        if self.passed != (len(self.hard_blocks) == 0):
            raise InvariantViolation(
                f"Verdict for {self.drug}: passed={self.passed} with "
                f"{len(self.hard_blocks)} hard block(s)"
            )

    @property
    def findings(self) -> tuple[SafetyFinding, ...]:
        """Findings ordered hard_block, warning, info."""
        return self.hard_blocks + self.warnings + self.info

    def to_dict(self) -> dict:
        return {
            "drug": self.drug,
            "passed": self.passed,
            "hard_blocks": [f.to_dict() for f in self.hard_blocks],
            "warnings": [f.to_dict() for f in self.warnings],
            "info": [f.to_dict() for f in self.info],
            "evaluated_at": self.evaluated_at.isoformat() if self.evaluated_at else None,
        }


@dataclass(frozen=True)
class CandidateEvaluation:
    """A candidate paired with its verdict."""
    candidate: CandidateTherapy
    verdict: SafetyVerdict

    def to_dict(self) -> dict:
        return {
            "candidate": self.candidate.to_dict(),
            "verdict": self.verdict.to_dict(),
        }


@dataclass(frozen=True)
class PrescreenExclusion:
    """A drug dropped by the generator before screening, with the reason."""
    drug: str
    reason: str
    findings: tuple[SafetyFinding, ...] = ()

    def to_dict(self) -> dict:
        return {
            "drug": self.drug,
            "reason": self.reason,
            "findings": [f.to_dict() for f in self.findings],
        }


# =============================================================================
# Stock and Availability
# =============================================================================

@dataclass(frozen=True)
class StockItem:
    drug_id: str
    generic: str
    brand: str = ""
    strength: str = ""
    formulation: str = "tablet"
    quantity: int = 0
    location: str = "Main Pharmacy"
    price: float | None = None

    def to_dict(self) -> dict:
        return {
            "drug_id": self.drug_id,
            "generic": self.generic,
            "brand": self.brand,
            "strength": self.strength,
            "formulation": self.formulation,
            "quantity": self.quantity,
            "location": self.location,
            "price": self.price,
        }


@dataclass(frozen=True)
class StockResult:
    """Answer of a stock source for one generic name."""
    available: bool
    items: tuple[StockItem, ...] = ()
    alternatives: tuple[StockItem, ...] = ()


@dataclass(frozen=True)
class SubstitutionEquivalent:
    drug: str
    equivalence_type: EquivalenceType
    confidence: float
    available: bool
    note: str | None = None

    def to_dict(self) -> dict:
        return {
            "drug": self.drug,
            "equivalence_type": self.equivalence_type.value,
            "confidence": self.confidence,
            "available": self.available,
            "note": self.note,
        }


def equivalent_sort_key(equivalent: SubstitutionEquivalent) -> tuple[int, float]:
    """Sort key for (available desc, confidence desc)."""
    return (0 if equivalent.available else 1, -equivalent.confidence)


@dataclass(frozen=True)
class AvailabilityRecord:
    """Stock status of one candidate plus its vetted substitution options."""
    drug: str
    available: bool
    locations: tuple[str, ...] = ()
    equivalents: tuple[SubstitutionEquivalent, ...] = ()
    nearest_source: str | None = None
    degraded: bool = False

    def __post_init__(self):
        names = [e.drug.lower() for e in self.equivalents]
        if len(names) != len(set(names)):
            raise InvariantViolation(f"Duplicate equivalents for {self.drug}: {names}")
        keys = [equivalent_sort_key(e) for e in self.equivalents]
        if keys != sorted(keys):
            raise InvariantViolation(f"Equivalents for {self.drug} are not sorted")

    def to_dict(self) -> dict:
        return {
            "drug": self.drug,
            "available": self.available,
            "locations": list(self.locations),
            "equivalents": [e.to_dict() for e in self.equivalents],
            "nearest_source": self.nearest_source,
            "degraded": self.degraded,
        }


# =============================================================================
# Collaborator results
# =============================================================================

@dataclass(frozen=True)
class CollaboratorResult(Generic[T]):
    """Value returned by a collaborator call, or its fallback plus the reason."""
    value: T
    degraded: DegradedInput | None = None

    @property
    def ok(self) -> bool:
        return self.degraded is None


# =============================================================================
# Decision Record
# =============================================================================

@dataclass(frozen=True)
class PipelineDecision:
    """Final immutable output of one pipeline run."""
    decision_id: str
    patient_id: str
    intent_text: str
    status: DecisionStatus
    indication: str | None
    chosen: CandidateTherapy | None
    alternatives: tuple[CandidateTherapy, ...]
    findings: tuple[SafetyFinding, ...]
    evaluations: tuple[CandidateEvaluation, ...]
    availability: tuple[AvailabilityRecord, ...]
    prescreen_exclusions: tuple[PrescreenExclusion, ...]
    degradations: tuple[DegradedInput, ...]
    stage_trail: tuple[PipelineStage, ...]
    decided_at: datetime
    pipeline_version: str

    def __post_init__(self):
        passing = [e.candidate for e in self.evaluations if e.verdict.passed]

        if (self.status == DecisionStatus.ACCEPTED) != bool(passing):
            raise InvariantViolation(
                f"Status {self.status.value} inconsistent with {len(passing)} passing candidate(s)"
            )
        if self.status == DecisionStatus.ACCEPTED:
            if self.chosen is None or self.chosen not in passing:
                raise InvariantViolation("Accepted decision must choose a passing candidate")
            if any(alt not in passing for alt in self.alternatives):
                raise InvariantViolation("Alternatives must all be passing candidates")
        elif self.chosen is not None or self.alternatives:
            raise InvariantViolation(
                f"Blocked decision ({self.status.value}) cannot carry a chosen candidate"
            )

    @property
    def ranked(self) -> tuple[CandidateTherapy, ...]:
        if self.chosen is None:
            return ()
        return (self.chosen,) + self.alternatives

    def to_dict(self) -> dict:
        return {
            "decision_id": self.decision_id,
            "patient_id": self.patient_id,
            "intent_text": self.intent_text,
            "status": self.status.value,
            "indication": self.indication,
            "chosen": self.chosen.to_dict() if self.chosen else None,
            "alternatives": [a.to_dict() for a in self.alternatives],
            "findings": [f.to_dict() for f in self.findings],
            "evaluations": [e.to_dict() for e in self.evaluations],
            "availability": [a.to_dict() for a in self.availability],
            "prescreen_exclusions": [x.to_dict() for x in self.prescreen_exclusions],
            "degradations": [d.to_dict() for d in self.degradations],
            "stage_trail": [s.value for s in self.stage_trail],
            "decided_at": self.decided_at.isoformat(),
            "pipeline_version": self.pipeline_version,
        }


# =============================================================================
# Prescriber Review
# =============================================================================

@dataclass(frozen=True)
class FieldModification:
    """One field the prescriber changed on the recommended therapy."""
    field: str
    from_value: str
    to_value: str

    def to_dict(self) -> dict:
        return {"field": self.field, "from": self.from_value, "to": self.to_value}
