"""Collaborator interfaces consumed by the pipeline."""

from abc import ABC, abstractmethod

from ..models import PatientContext, PipelineDecision, StockResult


class ClinicalDataSource(ABC):
    """Source of patient snapshots."""

    @abstractmethod
    def fetch_context(self, patient_id: str) -> PatientContext:
        """Fetch a patient context.

        Raises:
            PatientNotFoundError: if the patient does not exist
        """


class StockSource(ABC):
    """Pharmacy inventory lookup."""

    @abstractmethod
    def check_availability(self, generic_name: str, strength: str | None = None) -> StockResult:
        """Check whether a drug is in stock.

        Args:
            generic_name: Generic or brand name to look up
            strength: Optional strength filter (e.g. "500mg")

        Returns:
            StockResult with matching items and in-stock alternatives
        """

    @abstractmethod
    def find_nearest_with_stock(self, generic_name: str) -> str | None:
        """Location holding the most stock of a drug, or None."""


class AdvisoryTextGenerator(ABC):
    """Optional generator of free-text reasoning bullets.

    Output is purely additive: it never changes drug choice, dose or
    safety verdicts.
    """

    @abstractmethod
    def enrich(self, context: PatientContext, indication: str, intent_text: str) -> list[str]:
        """Return reasoning bullets for the indication."""


class AuditSink(ABC):
    """Durable store for decision records."""

    @abstractmethod
    def persist(self, decision: PipelineDecision, actor_id: str) -> str:
        """Store a decision and return its audit ID."""
