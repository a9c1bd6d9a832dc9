"""FHIR R4 clinical data source.

Builds a PatientContext from:
- Patient (demographics)
- Condition (active problems)
- MedicationStatement (current medications)
- AllergyIntolerance (active allergies)
- Observation (eGFR, creatinine, ALT, AST, body weight)

Request failures propagate: a partial patient snapshot is never returned.
"""

import logging
from datetime import date, datetime

import requests

from ..config import Config
from ..errors import PatientNotFoundError
from ..models import (
    Allergy,
    Condition,
    Demographics,
    Medication,
    OrganFunction,
    PatientContext,
)
from .base import ClinicalDataSource

logger = logging.getLogger(__name__)


# LOINC codes
LOINC_EGFR = ("33914-3", "48642-3", "62238-1")
LOINC_CREATININE = "2160-0"
LOINC_ALT = "1742-6"
LOINC_AST = "1920-8"
LOINC_WEIGHT = "29463-7"

SEX_MAP = {"male": "M", "female": "F", "other": "Other"}


def age_from_birth_date(birth_date: str, today: date | None = None) -> float:
    """Whole years between a FHIR birthDate and today."""
    born = datetime.fromisoformat(birth_date[:10]).date()
    today = today or date.today()
    years = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        years -= 1
    return float(years)


def _coding_display(concept: dict | None) -> str:
    concept = concept or {}
    codings = concept.get("coding") or [{}]
    return codings[0].get("display") or concept.get("text") or ""


def _coding_code(concept: dict | None) -> str:
    codings = (concept or {}).get("coding") or [{}]
    return codings[0].get("code") or ""


def _entries(bundle: dict) -> list[dict]:
    return [entry["resource"] for entry in bundle.get("entry", []) if "resource" in entry]


def parse_condition(resource: dict) -> Condition:
    return Condition(
        code=_coding_code(resource.get("code")) or "unknown",
        display=_coding_display(resource.get("code")) or "Unknown condition",
        # Queried with clinical-status=active
        status=_coding_code(resource.get("clinicalStatus")) or "active",
    )


def parse_medication(resource: dict) -> Medication:
    dosage = (resource.get("dosage") or [{}])[0]
    dose = dosage.get("text", "")
    dose_and_rate = dosage.get("doseAndRate") or []
    if dose_and_rate:
        quantity = dose_and_rate[0].get("doseQuantity", {})
        if "value" in quantity:
            dose = f"{quantity['value']:g}{quantity.get('unit', '')}"
    frequency = dosage.get("timing", {}).get("code", {}).get("text", "")

    return Medication(
        drug=_coding_display(resource.get("medicationCodeableConcept")) or "Unknown medication",
        dose=dose,
        frequency=frequency,
    )


def parse_allergy(resource: dict) -> Allergy:
    reactions = resource.get("reaction") or []
    severity = "unknown"
    reaction_text = None
    if reactions:
        severity = reactions[0].get("severity", "unknown")
        manifestation = (reactions[0].get("manifestation") or [{}])[0]
        reaction_text = _coding_display(manifestation) or None

    return Allergy(
        substance=_coding_display(resource.get("code")),
        severity=severity,
        verified=_coding_code(resource.get("verificationStatus")) == "confirmed",
        reaction=reaction_text,
    )


def latest_observation_values(observations: list[dict]) -> dict[str, float]:
    """Map LOINC code -> most recent value (bundle sorted newest first)."""
    values: dict[str, float] = {}
    for obs in observations:
        code = _coding_code(obs.get("code"))
        value = obs.get("valueQuantity", {}).get("value")
        if not code or value is None or code in values:
            continue
        values[code] = float(value)
    return values


class FHIRClinicalSource(ClinicalDataSource):
    """FHIR client that assembles patient contexts."""

    def __init__(self, fhir_url: str | None = None, timeout: float | None = None):
        """Initialize FHIR client.

        Args:
            fhir_url: Base URL for FHIR server. Defaults to FHIR_BASE_URL env var.
            timeout: Request timeout in seconds.
        """
        self.fhir_url = (fhir_url or Config.FHIR_BASE_URL).rstrip("/")
        self.timeout = timeout or Config.FHIR_TIMEOUT_SECONDS
        logger.info(f"Initialized FHIR client: {self.fhir_url}")

    def _get(self, path: str, params: dict | None = None) -> dict:
        """Execute FHIR GET request."""
        url = f"{self.fhir_url}/{path}"
        try:
            response = requests.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            logger.error(f"FHIR request failed: {e}")
            raise

    def _get_patient(self, patient_id: str) -> dict:
        url = f"{self.fhir_url}/Patient/{patient_id}"
        response = requests.get(url, timeout=self.timeout)
        if response.status_code == 404:
            raise PatientNotFoundError(patient_id)
        response.raise_for_status()
        patient = response.json()
        if not patient or patient.get("resourceType") != "Patient":
            raise PatientNotFoundError(patient_id)
        return patient

    def fetch_context(self, patient_id: str) -> PatientContext:
        """Assemble a complete PatientContext from FHIR.

        Args:
            patient_id: FHIR Patient resource ID

        Returns:
            PatientContext

        Raises:
            PatientNotFoundError: if the Patient resource does not exist
            requests.RequestException: on any other request failure
        """
        patient = self._get_patient(patient_id)

        names = patient.get("name") or [{}]
        name = " ".join(names[0].get("given", []) + [names[0].get("family", "")]).strip()
        birth_date = patient.get("birthDate")

        conditions = _entries(self._get("Condition", {
            "patient": patient_id,
            "clinical-status": "active",
        }))
        medications = _entries(self._get("MedicationStatement", {
            "patient": patient_id,
            "status": "active",
        }))
        allergies = _entries(self._get("AllergyIntolerance", {
            "patient": patient_id,
            "clinical-status": "active",
        }))
        observations = _entries(self._get("Observation", {
            "patient": patient_id,
            "code": ",".join(
                LOINC_EGFR + (LOINC_CREATININE, LOINC_ALT, LOINC_AST, LOINC_WEIGHT)
            ),
            "_sort": "-date",
        }))

        labs = latest_observation_values(observations)
        egfr = next((labs[code] for code in LOINC_EGFR if code in labs), None)

        context = PatientContext(
            patient_id=patient_id,
            demographics=Demographics(
                age=age_from_birth_date(birth_date) if birth_date else 0.0,
                sex=SEX_MAP.get(patient.get("gender", ""), "unknown"),
                weight_kg=labs.get(LOINC_WEIGHT),
                name=name,
            ),
            conditions=tuple(parse_condition(c) for c in conditions),
            medications=tuple(parse_medication(m) for m in medications),
            allergies=tuple(
                a for a in (parse_allergy(r) for r in allergies) if a.substance
            ),
            organ_function=OrganFunction(
                egfr=egfr,
                creatinine=labs.get(LOINC_CREATININE),
                alt=labs.get(LOINC_ALT),
                ast=labs.get(LOINC_AST),
            ),
        )
        logger.info(
            f"Fetched context for {patient_id}: {len(context.conditions)} conditions, "
            f"{len(context.medications)} meds, {len(context.allergies)} allergies"
        )
        return context
