"""In-memory collaborators for demos and tests."""

import copy
import logging

from ..context import build_patient_context
from ..drug_classes import shares_class
from ..errors import PatientNotFoundError
from ..models import PatientContext, StockItem, StockResult
from .base import ClinicalDataSource, StockSource

logger = logging.getLogger(__name__)


DEMO_PATIENTS: dict[str, dict] = {
    "PT001": {
        "patient_id": "PT001",
        "demographics": {"name": "Rajesh Kumar", "age": 62, "sex": "M", "weight_kg": 78},
        "conditions": [
            {"code": "E11", "display": "Type 2 Diabetes", "status": "active"},
            {"code": "I10", "display": "Hypertension", "status": "active"},
            {"code": "N18.3", "display": "CKD Stage 3a", "status": "active"},
        ],
        "medications": [
            {"drug": "Metformin", "dose": "500mg", "frequency": "BD"},
            {"drug": "Amlodipine", "dose": "5mg", "frequency": "OD"},
            {"drug": "Losartan", "dose": "50mg", "frequency": "OD"},
        ],
        "allergies": [
            {"substance": "Penicillin", "severity": "severe", "verified": True,
             "reaction": "Anaphylaxis"},
            {"substance": "Sulfa drugs", "severity": "moderate", "verified": True},
        ],
        "labs": {"egfr": 48, "creatinine": 1.8},
    },
    "PT002": {
        "patient_id": "PT002",
        "demographics": {"name": "Priya Sharma", "age": 45, "sex": "F", "weight_kg": 62},
        "conditions": [
            {"code": "J45", "display": "Asthma", "status": "active"},
            {"code": "E03", "display": "Hypothyroidism", "status": "active"},
        ],
        "medications": [
            {"drug": "Levothyroxine", "dose": "50mcg", "frequency": "OD"},
            {"drug": "Salbutamol inhaler", "dose": "100mcg", "frequency": "PRN"},
        ],
        "allergies": [
            {"substance": "Aspirin", "severity": "moderate", "verified": True,
             "reaction": "Bronchospasm"},
        ],
        "labs": {"egfr": 92},
    },
}


DEMO_STOCK: list[StockItem] = [
    StockItem("D001", "Amoxicillin", "Mox", "500mg", quantity=120),
    StockItem("D002", "Azithromycin", "Azithral", "500mg", quantity=45),
    StockItem("D003", "Cefuroxime", "Zinnat", "500mg", quantity=30),
    StockItem("D004", "Levofloxacin", "Levomac", "500mg", quantity=25),
    StockItem("D005", "Levofloxacin", "Levomac", "250mg", quantity=40),
    StockItem("D006", "Doxycycline", "Doxy-1", "100mg", quantity=60),
    StockItem("D007", "Nitrofurantoin", "Macrobid", "100mg", quantity=50),
    StockItem("D008", "Trimethoprim-Sulfamethoxazole", "Bactrim DS", "960mg", quantity=35),
    StockItem("D009", "Ciprofloxacin", "Ciplox", "500mg", quantity=80),
    StockItem("D010", "Paracetamol", "Dolo", "650mg", quantity=500),
    StockItem("D011", "Ibuprofen", "Brufen", "400mg", quantity=200),
    StockItem("D012", "Pantoprazole", "Pantocid", "40mg", quantity=150),
    StockItem("D013", "Metformin", "Glycomet", "500mg", quantity=300),
    StockItem("D014", "Amlodipine", "Amlong", "5mg", quantity=180),
    StockItem("D015", "Azithromycin", "Azee", "500mg", quantity=30,
              location="MedPlus - 0.5km"),
]


class InMemoryClinicalSource(ClinicalDataSource):
    """Clinical data source backed by a dict of patient records."""

    def __init__(self, records: dict[str, dict] | None = None):
        self.records = copy.deepcopy(DEMO_PATIENTS if records is None else records)

    def add_record(self, record: dict) -> None:
        self.records[str(record["patient_id"])] = copy.deepcopy(record)

    def fetch_context(self, patient_id: str) -> PatientContext:
        record = self.records.get(patient_id)
        if record is None:
            raise PatientNotFoundError(patient_id)
        return build_patient_context(record)


def _normalize_strength(strength: str | None) -> str:
    return "".join((strength or "").lower().split())


class InMemoryStockSource(StockSource):
    """Stock source over a seeded item list.

    A lookup matches items whose generic or brand name equals the query
    (case-insensitive) and that have quantity > 0.
    """

    def __init__(self, items: list[StockItem] | None = None):
        self.items: list[StockItem] = list(DEMO_STOCK if items is None else items)

    def _matches(self, item: StockItem, name: str) -> bool:
        query = name.strip().lower()
        return query in (item.generic.lower(), item.brand.lower())

    def check_availability(self, generic_name: str, strength: str | None = None) -> StockResult:
        wanted = _normalize_strength(strength)
        items = tuple(
            item
            for item in self.items
            if self._matches(item, generic_name)
            and item.quantity > 0
            and (not wanted or _normalize_strength(item.strength) == wanted)
        )
        alternatives = tuple(
            item
            for item in self.items
            if item.quantity > 0
            and not self._matches(item, generic_name)
            and shares_class(item.generic, generic_name)
        )
        return StockResult(available=bool(items), items=items, alternatives=alternatives)

    def find_nearest_with_stock(self, generic_name: str) -> str | None:
        in_stock = [
            item for item in self.items
            if self._matches(item, generic_name) and item.quantity > 0
        ]
        if not in_stock:
            return None
        return max(in_stock, key=lambda item: item.quantity).location
