"""Shared fixtures: patient records, contexts and stub collaborators."""

import time

import pytest
import requests

from therapy_pipeline.context import build_patient_context
from therapy_pipeline.models import CandidateTherapy, StockItem, StockResult
from therapy_pipeline.sources.audit_store import SQLiteDecisionStore
from therapy_pipeline.sources.base import AdvisoryTextGenerator, StockSource
from therapy_pipeline.sources.memory import DEMO_PATIENTS, InMemoryClinicalSource, InMemoryStockSource


def make_record(patient_id="TEST001", age=50, sex="M", weight_kg=70, conditions=None,
                medications=None, allergies=None, labs=None):
    """Build a plain patient record in the in-memory source format."""
    return {
        "patient_id": patient_id,
        "demographics": {"name": "Test Patient", "age": age, "sex": sex, "weight_kg": weight_kg},
        "conditions": conditions or [],
        "medications": medications or [],
        "allergies": allergies or [],
        "labs": labs or {},
    }


def make_context(**kwargs):
    return build_patient_context(make_record(**kwargs))


def make_candidate(generic_name="Azithromycin", confidence=0.85, dose="500mg",
                   frequency="OD", generation_rank=0):
    return CandidateTherapy(
        drug_class="Antibiotic",
        generic_name=generic_name,
        dose=dose,
        frequency=frequency,
        duration="5 days",
        route="oral",
        confidence=confidence,
        generation_rank=generation_rank,
    )


class StaticAdvisor(AdvisoryTextGenerator):
    """Returns fixed bullets."""

    def __init__(self, bullets):
        self.bullets = list(bullets)
        self.calls = 0

    def enrich(self, context, indication, intent_text):
        self.calls += 1
        return list(self.bullets)


class FailingAdvisor(AdvisoryTextGenerator):
    """Simulates an unreachable advisory service."""

    def enrich(self, context, indication, intent_text):
        raise requests.ConnectionError("advisory service unreachable")


class SlowAdvisor(AdvisoryTextGenerator):
    def __init__(self, delay):
        self.delay = delay

    def enrich(self, context, indication, intent_text):
        time.sleep(self.delay)
        return ["too late"]


class FailingStockSource(StockSource):
    """Stock source whose every call fails."""

    def check_availability(self, generic_name, strength=None):
        raise requests.Timeout("stock service timed out")

    def find_nearest_with_stock(self, generic_name):
        raise requests.Timeout("stock service timed out")


class EmptyStockSource(StockSource):
    def check_availability(self, generic_name, strength=None):
        return StockResult(available=False)

    def find_nearest_with_stock(self, generic_name):
        return None


@pytest.fixture
def pt001_context():
    """62M, CKD 3a (eGFR 48), penicillin and sulfa allergies."""
    return build_patient_context(DEMO_PATIENTS["PT001"])


@pytest.fixture
def pt002_context():
    """45F, asthma, aspirin allergy, normal renal function."""
    return build_patient_context(DEMO_PATIENTS["PT002"])


@pytest.fixture
def severe_renal_record():
    """eGFR 25, no sulfa allergy, used for the UTI scenario."""
    return make_record(
        patient_id="TEST-RENAL",
        age=58,
        sex="F",
        weight_kg=64,
        conditions=[{"code": "N18.4", "display": "CKD Stage 4", "status": "active"}],
        labs={"egfr": 25, "creatinine": 2.4},
    )


@pytest.fixture
def clinical_source(severe_renal_record):
    source = InMemoryClinicalSource()
    source.add_record(severe_renal_record)
    return source


@pytest.fixture
def stock_source():
    return InMemoryStockSource()


@pytest.fixture
def amoxicillin_out_of_stock():
    """Amoxicillin out of stock; its salt and a same-class drug in stock."""
    return InMemoryStockSource([
        StockItem("S001", "Amoxicillin", "Mox", "500mg", quantity=0),
        StockItem("S002", "Amoxicillin trihydrate", "", "500mg", quantity=40),
        StockItem("S003", "Ampicillin", "", "500mg", quantity=25, location="Ward 4 Store"),
    ])


@pytest.fixture
def audit_store(tmp_path):
    return SQLiteDecisionStore(db_path=str(tmp_path / "decisions.db"))
