"""Error taxonomy for the therapy pipeline.

- PatientNotFoundError: surfaced to the caller, the pipeline does not run.
- DegradedInput: a value recorded when a collaborator is unreachable or
  times out. The run continues with the documented fallback.
- InvariantViolation: a programming error. Never caught inside the core.

Empty candidate sets and all-unsafe outcomes are not errors; they are
PipelineDecision statuses.
"""

from dataclasses import dataclass


class PatientNotFoundError(LookupError):
    """Referenced patient does not exist in the clinical data source."""

    def __init__(self, patient_id: str):
        super().__init__(f"Patient not found: {patient_id}")
        self.patient_id = patient_id


class InvariantViolation(Exception):
    """A pipeline invariant was broken. Halts the run."""


@dataclass(frozen=True)
class DegradedInput:
    """Record of a collaborator call that failed and was replaced by a fallback."""
    source: str
    operation: str
    reason: str
    fallback: str

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "operation": self.operation,
            "reason": self.reason,
            "fallback": self.fallback,
        }
