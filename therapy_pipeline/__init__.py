"""Safety-gated therapy recommendation pipeline."""

from .config import Config
from .errors import DegradedInput, InvariantViolation, PatientNotFoundError
from .models import (
    CandidateTherapy,
    DecisionStatus,
    FieldModification,
    PatientContext,
    PipelineDecision,
    PipelineStage,
    ReviewAction,
    SafetyFinding,
    SafetyVerdict,
)
from .pipeline import TherapyPipeline
from .safety_engine import SafetyRulesEngine

__all__ = [
    "CandidateTherapy",
    "Config",
    "DecisionStatus",
    "DegradedInput",
    "FieldModification",
    "InvariantViolation",
    "PatientContext",
    "PatientNotFoundError",
    "PipelineDecision",
    "PipelineStage",
    "ReviewAction",
    "SafetyFinding",
    "SafetyRulesEngine",
    "SafetyVerdict",
    "TherapyPipeline",
]
