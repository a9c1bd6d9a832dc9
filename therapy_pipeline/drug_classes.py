"""Drug class membership heuristic.

Every rule, the generator pre-screen and the substitution resolver ask
"what class is this drug?" through classify(). Matching is a
case-insensitive substring test against member names plus a whole-word
test against class labels ("nsaids", "ace inhibitor"). It is a heuristic:
replacing it with a terminology lookup (RxNorm ingredient/class) only
requires changing this module.
"""

import logging
import re
from enum import Enum

logger = logging.getLogger(__name__)


class DrugClass(str, Enum):
    """Therapeutic classes the rule tables reason about."""
    PENICILLIN = "penicillin"
    CEPHALOSPORIN = "cephalosporin"
    CARBAPENEM = "carbapenem"
    MACROLIDE = "macrolide"
    FLUOROQUINOLONE = "fluoroquinolone"
    TETRACYCLINE = "tetracycline"
    SULFONAMIDE = "sulfonamide"
    NITROFURAN = "nitrofuran"
    AMINOGLYCOSIDE = "aminoglycoside"
    GLYCOPEPTIDE = "glycopeptide"
    ANTIVIRAL = "antiviral"
    AZOLE_ANTIFUNGAL = "azole_antifungal"
    NSAID = "nsaid"
    ANALGESIC = "analgesic"
    ACE_INHIBITOR = "ace_inhibitor"
    ARB = "arb"
    CALCIUM_CHANNEL_BLOCKER = "calcium_channel_blocker"
    DIURETIC = "diuretic"
    STATIN = "statin"
    BIGUANIDE = "biguanide"
    SGLT2_INHIBITOR = "sglt2_inhibitor"
    PPI = "ppi"
    H2_BLOCKER = "h2_blocker"
    ANTICOAGULANT = "anticoagulant"
    ANTIPLATELET = "antiplatelet"
    ANTIARRHYTHMIC = "antiarrhythmic"
    ANTICONVULSANT = "anticonvulsant"
    BENZODIAZEPINE = "benzodiazepine"
    ANTIHISTAMINE = "antihistamine"

    @property
    def display_name(self) -> str:
        """Human-readable class name."""
        names = {
            DrugClass.PENICILLIN: "Penicillin",
            DrugClass.CEPHALOSPORIN: "Cephalosporin",
            DrugClass.CARBAPENEM: "Carbapenem",
            DrugClass.MACROLIDE: "Macrolide",
            DrugClass.FLUOROQUINOLONE: "Fluoroquinolone",
            DrugClass.TETRACYCLINE: "Tetracycline",
            DrugClass.SULFONAMIDE: "Sulfonamide",
            DrugClass.NITROFURAN: "Nitrofuran",
            DrugClass.AMINOGLYCOSIDE: "Aminoglycoside",
            DrugClass.GLYCOPEPTIDE: "Glycopeptide",
            DrugClass.ANTIVIRAL: "Antiviral",
            DrugClass.AZOLE_ANTIFUNGAL: "Azole Antifungal",
            DrugClass.NSAID: "NSAID",
            DrugClass.ANALGESIC: "Analgesic",
            DrugClass.ACE_INHIBITOR: "ACE Inhibitor",
            DrugClass.ARB: "ARB",
            DrugClass.CALCIUM_CHANNEL_BLOCKER: "Calcium Channel Blocker",
            DrugClass.DIURETIC: "Diuretic",
            DrugClass.STATIN: "Statin",
            DrugClass.BIGUANIDE: "Biguanide",
            DrugClass.SGLT2_INHIBITOR: "SGLT2 Inhibitor",
            DrugClass.PPI: "Proton Pump Inhibitor",
            DrugClass.H2_BLOCKER: "H2 Blocker",
            DrugClass.ANTICOAGULANT: "Anticoagulant",
            DrugClass.ANTIPLATELET: "Antiplatelet",
            DrugClass.ANTIARRHYTHMIC: "Antiarrhythmic",
            DrugClass.ANTICONVULSANT: "Anticonvulsant",
            DrugClass.BENZODIAZEPINE: "Benzodiazepine",
            DrugClass.ANTIHISTAMINE: "Antihistamine",
        }
        return names.get(self, self.value)


# Class membership. "labels" are class names as they appear in allergy lists
# and interaction tables; "members" are generic/brand names.
DRUG_CLASSES: dict[DrugClass, dict[str, list[str]]] = {
    DrugClass.PENICILLIN: {
        "labels": ["penicillins", "beta-lactam", "beta lactam"],
        "members": [
            "penicillin",
            "amoxicillin",
            "ampicillin",
            "piperacillin",
            "oxacillin",
            "nafcillin",
            "dicloxacillin",
            "flucloxacillin",
            "augmentin",
        ],
    },
    DrugClass.CEPHALOSPORIN: {
        "labels": ["cephalosporins"],
        "members": [
            "cephalosporin",
            "cefazolin",
            "cephalexin",
            "cefalexin",
            "cefuroxime",
            "cefixime",
            "cefpodoxime",
            "ceftriaxone",
            "ceftazidime",
            "cefepime",
        ],
    },
    DrugClass.CARBAPENEM: {
        "labels": ["carbapenems"],
        "members": ["meropenem", "imipenem", "ertapenem"],
    },
    DrugClass.MACROLIDE: {
        "labels": ["macrolides"],
        "members": ["azithromycin", "clarithromycin", "erythromycin"],
    },
    DrugClass.FLUOROQUINOLONE: {
        "labels": ["fluoroquinolones", "quinolones"],
        "members": [
            "ciprofloxacin",
            "levofloxacin",
            "moxifloxacin",
            "ofloxacin",
            "norfloxacin",
        ],
    },
    DrugClass.TETRACYCLINE: {
        "labels": ["tetracyclines"],
        "members": ["doxycycline", "minocycline", "tetracycline"],
    },
    DrugClass.SULFONAMIDE: {
        "labels": ["sulfonamides", "sulpha"],
        "members": [
            "sulfa",
            "sulfamethoxazole",
            "trimethoprim-sulfamethoxazole",
            "co-trimoxazole",
            "cotrimoxazole",
            "bactrim",
            "septra",
        ],
    },
    DrugClass.NITROFURAN: {
        "labels": [],
        "members": ["nitrofurantoin"],
    },
    DrugClass.AMINOGLYCOSIDE: {
        "labels": ["aminoglycosides"],
        "members": ["gentamicin", "tobramycin", "amikacin"],
    },
    DrugClass.GLYCOPEPTIDE: {
        "labels": ["glycopeptides"],
        "members": ["vancomycin", "teicoplanin"],
    },
    DrugClass.ANTIVIRAL: {
        "labels": ["antivirals"],
        "members": ["acyclovir", "valacyclovir", "oseltamivir"],
    },
    DrugClass.AZOLE_ANTIFUNGAL: {
        "labels": ["azoles", "azole antifungals"],
        "members": ["itraconazole", "ketoconazole", "fluconazole", "voriconazole"],
    },
    DrugClass.NSAID: {
        "labels": ["nsaid", "nsaids"],
        "members": [
            "aspirin",
            "ibuprofen",
            "naproxen",
            "diclofenac",
            "ketorolac",
            "celecoxib",
            "indomethacin",
        ],
    },
    DrugClass.ANALGESIC: {
        "labels": [],
        "members": ["paracetamol", "acetaminophen", "tramadol"],
    },
    DrugClass.ACE_INHIBITOR: {
        "labels": ["ace inhibitor", "ace inhibitors", "ace-inhibitor"],
        "members": ["lisinopril", "enalapril", "ramipril", "captopril", "perindopril"],
    },
    DrugClass.ARB: {
        "labels": ["arb", "arbs"],
        "members": ["losartan", "valsartan", "telmisartan", "candesartan", "irbesartan"],
    },
    DrugClass.CALCIUM_CHANNEL_BLOCKER: {
        "labels": ["calcium channel blockers"],
        "members": ["amlodipine", "nifedipine", "diltiazem", "verapamil"],
    },
    DrugClass.DIURETIC: {
        "labels": ["diuretic", "diuretics"],
        "members": [
            "furosemide",
            "hydrochlorothiazide",
            "chlorthalidone",
            "bumetanide",
            "spironolactone",
            "indapamide",
        ],
    },
    DrugClass.STATIN: {
        "labels": ["statins"],
        "members": ["simvastatin", "atorvastatin", "rosuvastatin", "pravastatin", "lovastatin"],
    },
    DrugClass.BIGUANIDE: {
        "labels": [],
        "members": ["metformin"],
    },
    DrugClass.SGLT2_INHIBITOR: {
        "labels": ["sglt2 inhibitors", "gliflozins"],
        "members": ["empagliflozin", "dapagliflozin", "canagliflozin"],
    },
    DrugClass.PPI: {
        "labels": ["ppi", "ppis", "proton pump inhibitors"],
        "members": ["omeprazole", "pantoprazole", "esomeprazole", "lansoprazole", "rabeprazole"],
    },
    DrugClass.H2_BLOCKER: {
        "labels": ["h2 blockers"],
        "members": ["famotidine", "ranitidine"],
    },
    DrugClass.ANTICOAGULANT: {
        "labels": ["anticoagulants"],
        "members": ["warfarin", "apixaban", "rivaroxaban", "heparin", "enoxaparin"],
    },
    DrugClass.ANTIPLATELET: {
        "labels": ["antiplatelets"],
        "members": ["clopidogrel", "ticagrelor", "prasugrel"],
    },
    DrugClass.ANTIARRHYTHMIC: {
        "labels": ["antiarrhythmics"],
        "members": ["amiodarone", "digoxin", "quinidine", "sotalol"],
    },
    DrugClass.ANTICONVULSANT: {
        "labels": ["anticonvulsants"],
        "members": ["gabapentin", "pregabalin", "carbamazepine", "phenytoin", "valproate"],
    },
    DrugClass.BENZODIAZEPINE: {
        "labels": ["benzodiazepine", "benzodiazepines"],
        "members": ["diazepam", "lorazepam", "alprazolam", "clonazepam", "midazolam"],
    },
    DrugClass.ANTIHISTAMINE: {
        "labels": ["antihistamines"],
        "members": [
            "diphenhydramine",
            "hydroxyzine",
            "meclizine",
            "promethazine",
            "chlorpheniramine",
            "cetirizine",
        ],
    },
}


def _normalize(name: str) -> str:
    return " ".join(name.lower().replace("_", " ").split())


def _label_pattern(label: str) -> re.Pattern:
    return re.compile(r"(?<![a-z0-9])" + re.escape(label) + r"(?![a-z0-9])")


_LABEL_INDEX: dict[str, DrugClass] = {}
_LABEL_PATTERNS: list[tuple[re.Pattern, DrugClass]] = []
for _drug_class, _definition in DRUG_CLASSES.items():
    for _label in _definition["labels"]:
        _LABEL_INDEX[_label] = _drug_class
        _LABEL_PATTERNS.append((_label_pattern(_label), _drug_class))


def classify(drug_name: str) -> list[DrugClass]:
    """Return every class a drug (or allergen, or class label) belongs to.

    Args:
        drug_name: Generic, brand, combination or class name, any case

    Returns:
        Classes in table declaration order; empty for unknown names
    """
    name = _normalize(drug_name)
    if not name:
        return []

    classes: list[DrugClass] = []
    for drug_class, definition in DRUG_CLASSES.items():
        if any(member in name for member in definition["members"]):
            classes.append(drug_class)

    for pattern, drug_class in _LABEL_PATTERNS:
        if drug_class not in classes and pattern.search(name):
            classes.append(drug_class)

    return classes


def is_class_label(term: str) -> bool:
    """True if term names a class ("nsaids") rather than a single drug."""
    return _normalize(term) in _LABEL_INDEX


def matches_term(drug_name: str, term: str) -> bool:
    """Check whether a drug matches a rule-table term.

    Class labels match by class membership; anything else matches as a
    case-insensitive substring of the drug name.
    """
    normalized_term = _normalize(term)
    if not normalized_term:
        return False
    if normalized_term in _LABEL_INDEX:
        return _LABEL_INDEX[normalized_term] in classify(drug_name)
    return normalized_term in _normalize(drug_name)


def primary_class(drug_name: str) -> DrugClass | None:
    """First class of a drug, used for display and same-class lookups."""
    classes = classify(drug_name)
    return classes[0] if classes else None


def shares_class(drug_a: str, drug_b: str) -> bool:
    return bool(set(classify(drug_a)) & set(classify(drug_b)))
