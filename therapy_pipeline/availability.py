"""Availability and substitution resolution.

For each safe candidate, ask the stock source whether it is available. If it
is not, look up substitution equivalents in priority order:

    same salt (0.98) -> brand equivalents (0.95) -> same class (0.75)
    -> therapeutic alternatives (only when nothing above survives)

Every equivalent is re-screened with the full safety engine before it is
offered, and the final list is deduplicated and sorted by
(available desc, confidence desc).
"""

import logging
from dataclasses import replace

from .config import Config
from .dosing import parse_strength
from .errors import DegradedInput
from .models import (
    AvailabilityRecord,
    CandidateTherapy,
    EquivalenceType,
    FindingSeverity,
    PatientContext,
    StockResult,
    SubstitutionEquivalent,
    equivalent_sort_key,
)
from .safety_engine import SafetyRulesEngine
from .sources.base import StockSource
from .sources.guard import guarded_call

logger = logging.getLogger(__name__)


CONFIDENCE_BY_TYPE = {
    EquivalenceType.SAME_SALT: 0.98,
    EquivalenceType.SAME_STRENGTH: 0.95,
    EquivalenceType.SAME_CLASS: 0.75,
}

# Drug equivalence database
DRUG_EQUIVALENTS: dict[str, dict] = {
    "amoxicillin": {
        "salts": ["Amoxicillin trihydrate"],
        "brands": ["Mox", "Novamox", "Amoxil"],
        "same_class": [
            {"drug": "Ampicillin", "note": "Similar spectrum"},
            {"drug": "Amoxicillin-Clavulanate", "note": "Extended spectrum"},
        ],
    },
    "azithromycin": {
        "salts": ["Azithromycin dihydrate"],
        "brands": ["Azithral", "Zithromax", "Azee"],
        "same_class": [
            {"drug": "Clarithromycin", "note": "More GI side effects"},
            {"drug": "Erythromycin", "note": "QID dosing required"},
        ],
    },
    "cefuroxime": {
        "salts": ["Cefuroxime axetil"],
        "brands": ["Zinnat", "Ceftum", "Zocef"],
        "same_class": [
            {"drug": "Cefixime", "note": "Once daily, oral only"},
            {"drug": "Cefpodoxime", "note": "Similar coverage"},
        ],
    },
    "levofloxacin": {
        "salts": ["Levofloxacin hemihydrate"],
        "brands": ["Levomac", "Tavanic", "Levoflox"],
        "same_class": [
            {"drug": "Ciprofloxacin", "note": "BID dosing, more GI effects"},
            {"drug": "Moxifloxacin", "note": "Broader anaerobic coverage"},
        ],
    },
    "metformin": {
        "salts": ["Metformin hydrochloride"],
        "brands": ["Glycomet", "Glucophage", "Glyciphage"],
        "same_class": [
            {"drug": "Glimepiride", "note": "Risk of hypoglycemia"},
            {"drug": "Sitagliptin", "note": "No hypoglycemia risk"},
        ],
    },
    "paracetamol": {
        "salts": ["Acetaminophen"],
        "brands": ["Dolo", "Calpol", "Tylenol", "Crocin"],
        "same_class": [
            {"drug": "Ibuprofen", "note": "Anti-inflammatory, GI risk"},
        ],
    },
    "pantoprazole": {
        "salts": ["Pantoprazole sodium"],
        "brands": ["Pantocid", "Protonix", "Pan"],
        "same_class": [
            {"drug": "Omeprazole", "note": "More drug interactions"},
            {"drug": "Rabeprazole", "note": "Faster onset"},
            {"drug": "Esomeprazole", "note": "S-isomer of omeprazole"},
        ],
    },
}

# Looser alternatives by indication, offered only when nothing closer survives
THERAPEUTIC_ALTERNATIVES: dict[str, list[dict]] = {
    "bacterial_respiratory": [
        {"drug": "Azithromycin", "confidence": 0.80, "note": "Macrolide, covers atypicals"},
        {"drug": "Levofloxacin", "confidence": 0.75, "note": "Respiratory fluoroquinolone"},
    ],
    "uti": [
        {"drug": "Ciprofloxacin", "confidence": 0.85, "note": "Fluoroquinolone, urinary penetration"},
    ],
}


def find_equivalence_key(drug_name: str) -> str | None:
    """Equivalence database key for a generic name, or None."""
    key = drug_name.strip().lower()
    return key if key in DRUG_EQUIVALENTS else None


def sort_equivalents(
    equivalents: list[SubstitutionEquivalent],
) -> tuple[SubstitutionEquivalent, ...]:
    """Deduplicate by drug name (first wins) and sort stably by (available desc, confidence desc)."""
    seen: set[str] = set()
    unique = []
    for equivalent in equivalents:
        name = equivalent.drug.lower()
        if name in seen:
            continue
        seen.add(name)
        unique.append(equivalent)
    return tuple(sorted(unique, key=equivalent_sort_key))


class AvailabilityResolver:
    """Annotates safe candidates with stock status and vetted substitutes."""

    def __init__(
        self,
        stock_source: StockSource,
        engine: SafetyRulesEngine | None = None,
        timeout: float | None = None,
    ):
        """Initialize resolver.

        Args:
            stock_source: Pharmacy stock collaborator
            engine: Safety engine used to re-screen equivalents
            timeout: Per-call stock timeout in seconds. Uses config if None.
        """
        self.stock_source = stock_source
        self.engine = engine or SafetyRulesEngine()
        self.timeout = timeout or Config.STOCK_TIMEOUT_SECONDS

    def resolve(
        self,
        context: PatientContext,
        candidates: list[CandidateTherapy] | tuple[CandidateTherapy, ...],
        indication: str | None = None,
    ) -> tuple[tuple[AvailabilityRecord, ...], tuple[DegradedInput, ...]]:
        """Resolve availability for every candidate.

        Args:
            context: Patient context, used to re-screen equivalents
            candidates: Safe candidates in rank order
            indication: Indication ID, used for therapeutic alternatives

        Returns:
            (one AvailabilityRecord per candidate in input order, degradations)
        """
        records = []
        degradations: list[DegradedInput] = []

        for candidate in candidates:
            record = self._resolve_one(context, candidate, indication, degradations)
            records.append(record)

        return tuple(records), tuple(degradations)

    def _check(
        self,
        name: str,
        strength: str | None,
        degradations: list[DegradedInput],
    ) -> StockResult:
        result = guarded_call(
            source="stock",
            operation=f"check_availability:{name}",
            func=lambda: self.stock_source.check_availability(name, strength),
            fallback=StockResult(available=False),
            timeout=self.timeout,
            fallback_description="treated as unavailable",
        )
        if result.degraded:
            degradations.append(result.degraded)
        return result.value

    def _resolve_one(
        self,
        context: PatientContext,
        candidate: CandidateTherapy,
        indication: str | None,
        degradations: list[DegradedInput],
    ) -> AvailabilityRecord:
        before = len(degradations)
        strength = parse_strength(candidate.dose)
        stock = self._check(candidate.generic_name, strength, degradations)
        primary_degraded = len(degradations) > before

        if stock.available:
            locations = tuple(dict.fromkeys(item.location for item in stock.items))
            return AvailabilityRecord(
                drug=candidate.generic_name,
                available=True,
                locations=locations,
            )

        logger.info(f"{candidate.generic_name} unavailable, resolving equivalents")
        equivalents = self.find_equivalents(context, candidate, indication, degradations)

        nearest = None
        if not primary_degraded:
            nearest_result = guarded_call(
                source="stock",
                operation=f"find_nearest_with_stock:{candidate.generic_name}",
                func=lambda: self.stock_source.find_nearest_with_stock(candidate.generic_name),
                fallback=None,
                timeout=self.timeout,
                fallback_description="no nearest source",
            )
            if nearest_result.degraded:
                degradations.append(nearest_result.degraded)
            nearest = nearest_result.value

        return AvailabilityRecord(
            drug=candidate.generic_name,
            available=False,
            equivalents=equivalents,
            nearest_source=nearest,
            degraded=primary_degraded,
        )

    def find_equivalents(
        self,
        context: PatientContext,
        candidate: CandidateTherapy,
        indication: str | None,
        degradations: list[DegradedInput],
    ) -> tuple[SubstitutionEquivalent, ...]:
        """Find safe substitution equivalents for an unavailable candidate."""
        strength = parse_strength(candidate.dose)
        key = find_equivalence_key(candidate.generic_name)
        proposed: list[tuple] = []

        if key:
            config = DRUG_EQUIVALENTS[key]
            for salt in config["salts"]:
                proposed.append((salt, salt, EquivalenceType.SAME_SALT,
                                 CONFIDENCE_BY_TYPE[EquivalenceType.SAME_SALT], strength, None))
            for brand in config["brands"]:
                proposed.append((brand, f"{brand} ({key})", EquivalenceType.SAME_STRENGTH,
                                 CONFIDENCE_BY_TYPE[EquivalenceType.SAME_STRENGTH], strength, None))
            for alt in config["same_class"]:
                proposed.append((alt["drug"], alt["drug"], EquivalenceType.SAME_CLASS,
                                 CONFIDENCE_BY_TYPE[EquivalenceType.SAME_CLASS], None, alt.get("note")))

        equivalents = self._vet(context, candidate, proposed, degradations)

        if not equivalents and indication in THERAPEUTIC_ALTERNATIVES:
            loose = [
                (alt["drug"], alt["drug"], EquivalenceType.THERAPEUTIC_ALTERNATIVE,
                 alt["confidence"], None, alt.get("note"))
                for alt in THERAPEUTIC_ALTERNATIVES[indication]
                if alt["drug"].lower() != candidate.generic_name.lower()
            ]
            equivalents = self._vet(context, candidate, loose, degradations)

        return sort_equivalents(equivalents)

    def _vet(
        self,
        context: PatientContext,
        candidate: CandidateTherapy,
        proposed: list,
        degradations: list[DegradedInput],
    ) -> list[SubstitutionEquivalent]:
        """Re-screen proposed equivalents and check their stock."""
        vetted = []
        for drug, screen_name, equivalence_type, confidence, strength, note in proposed:
            findings = self.engine.evaluate(context, replace(candidate, generic_name=screen_name))
            if any(f.severity == FindingSeverity.HARD_BLOCK for f in findings):
                logger.info(f"Equivalent {drug} dropped for {context.patient_id}: hard block")
                continue

            stock = self._check(drug, strength, degradations)
            vetted.append(
                SubstitutionEquivalent(
                    drug=drug,
                    equivalence_type=equivalence_type,
                    confidence=confidence,
                    available=stock.available,
                    note=note,
                )
            )
        return vetted
