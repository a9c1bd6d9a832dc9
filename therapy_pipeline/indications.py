"""Clinical intent taxonomy.

Maps free-text clinical intent to one indication and its ordered
preferred/alternative drug lists. Classification is keyword matching: the
first indication in table order with a matching keyword wins. A keyword
matches when each of its words appears as a whole word in the text, so
"severe pain" matches "severe lower back pain".
"""

import re
from dataclasses import dataclass


@dataclass(frozen=True)
class IndicationMapping:
    """Maps clinical terms to a drug selection for one indication."""
    indication_id: str                    # Canonical ID (e.g., "uti")
    display_name: str                     # Human-readable (e.g., "Urinary Tract Infection")
    drug_class: str                       # Therapeutic group of the drug lists
    keywords: tuple[str, ...] = ()
    preferred: tuple[str, ...] = ()
    alternatives: tuple[str, ...] = ()
    excluded_if: tuple[str, ...] = ()     # Words that veto this indication
    notes: str = ""

    @property
    def drugs(self) -> list[str]:
        """Ordered union of preferred then alternative drugs."""
        ordered: list[str] = []
        for drug in self.preferred + self.alternatives:
            if drug.lower() not in (d.lower() for d in ordered):
                ordered.append(drug)
        return ordered


# Declaration order is the tie-break order
INDICATIONS: dict[str, IndicationMapping] = {
    "uti": IndicationMapping(
        indication_id="uti",
        display_name="Urinary Tract Infection",
        drug_class="Antibiotic",
        keywords=("uti", "urinary", "cystitis", "dysuria", "pyelonephritis"),
        preferred=("Nitrofurantoin", "Trimethoprim-Sulfamethoxazole"),
        alternatives=("Ciprofloxacin", "Levofloxacin", "Cefixime"),
    ),
    "bacterial_respiratory": IndicationMapping(
        indication_id="bacterial_respiratory",
        display_name="Bacterial Respiratory Infection",
        drug_class="Antibiotic",
        keywords=(
            "respiratory", "pneumonia", "bronchitis", "sinusitis", "pharyngitis",
            "tonsillitis", "chest infection", "cough",
        ),
        preferred=("Amoxicillin", "Amoxicillin-Clavulanate", "Azithromycin"),
        alternatives=("Cefuroxime", "Levofloxacin", "Doxycycline"),
    ),
    "hypertension": IndicationMapping(
        indication_id="hypertension",
        display_name="Hypertension",
        drug_class="Antihypertensive",
        keywords=("hypertension", "htn", "blood pressure"),
        preferred=("Amlodipine", "Losartan", "Lisinopril"),
        alternatives=("Atenolol", "Hydrochlorothiazide", "Telmisartan"),
    ),
    "diabetes_type2": IndicationMapping(
        indication_id="diabetes_type2",
        display_name="Type 2 Diabetes",
        drug_class="Antidiabetic",
        keywords=("diabetes", "t2dm", "sugar", "hyperglycemia"),
        preferred=("Metformin", "Glimepiride", "Sitagliptin"),
        alternatives=("Empagliflozin", "Dapagliflozin", "Pioglitazone"),
    ),
    "pain_moderate": IndicationMapping(
        indication_id="pain_moderate",
        display_name="Moderate to Severe Pain",
        drug_class="Analgesic",
        keywords=("severe pain", "moderate pain"),
        preferred=("Tramadol", "Paracetamol/Codeine"),
        alternatives=("Ibuprofen", "Diclofenac"),
    ),
    "pain_mild": IndicationMapping(
        indication_id="pain_mild",
        display_name="Mild Pain",
        drug_class="Analgesic",
        keywords=("pain", "headache", "ache"),
        preferred=("Paracetamol",),
        alternatives=("Ibuprofen", "Naproxen"),
    ),
    "gerd": IndicationMapping(
        indication_id="gerd",
        display_name="Gastro-oesophageal Reflux",
        drug_class="PPI",
        keywords=("gerd", "reflux", "acidity", "heartburn", "dyspepsia"),
        preferred=("Pantoprazole", "Omeprazole"),
        alternatives=("Rabeprazole", "Esomeprazole", "Famotidine"),
    ),
    "fever": IndicationMapping(
        indication_id="fever",
        display_name="Fever",
        drug_class="Antipyretic",
        keywords=("fever", "pyrexia"),
        preferred=("Paracetamol",),
        alternatives=("Ibuprofen",),
        excluded_if=("infection", "bacterial"),
        notes="Fever with a suspected infection is routed to the infection indication.",
    ),
}


def _tokens(text: str) -> set[str]:
    return set(re.findall(r"[a-z0-9]+", text.lower()))


def _keyword_matches(keyword: str, tokens: set[str]) -> bool:
    words = re.findall(r"[a-z0-9]+", keyword.lower())
    return bool(words) and all(word in tokens for word in words)


def classify_intent(
    intent_text: str,
    indications: dict[str, IndicationMapping] | None = None,
) -> IndicationMapping | None:
    """Map free-text clinical intent to an indication.

    Args:
        intent_text: Prescriber's free-text intent
        indications: Indication table (defaults to INDICATIONS)

    Returns:
        The first matching IndicationMapping, or None if nothing matches
    """
    table = INDICATIONS if indications is None else indications
    tokens = _tokens(intent_text)
    if not tokens:
        return None

    for mapping in table.values():
        if any(word in tokens for word in mapping.excluded_if):
            continue
        if any(_keyword_matches(keyword, tokens) for keyword in mapping.keywords):
            return mapping
    return None


def get_indication(indication_id: str) -> IndicationMapping | None:
    return INDICATIONS.get(indication_id)
