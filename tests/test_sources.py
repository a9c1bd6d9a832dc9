"""Tests for collaborator implementations: FHIR, stock, advisory and the call guard."""

import json
import time
from datetime import date
from unittest.mock import Mock, patch

import pytest
import requests

from conftest import make_context
from therapy_pipeline.errors import PatientNotFoundError
from therapy_pipeline.models import RiskFlag, StockItem, StockResult
from therapy_pipeline.sources.advisory import NullAdvisor, OllamaAdvisor, build_prompt, parse_reasoning
from therapy_pipeline.sources.fhir_client import (
    FHIRClinicalSource,
    age_from_birth_date,
    latest_observation_values,
    parse_allergy,
    parse_medication,
)
from therapy_pipeline.sources.guard import guarded_call
from therapy_pipeline.sources.memory import InMemoryStockSource
from therapy_pipeline.sources.stock_http import HTTPStockSource, parse_stock_item


def _response(payload, status_code=200):
    response = Mock()
    response.status_code = status_code
    response.json.return_value = payload
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    else:
        response.raise_for_status.return_value = None
    return response


def _bundle(*resources):
    return {"resourceType": "Bundle", "entry": [{"resource": r} for r in resources]}


PATIENT = {
    "resourceType": "Patient",
    "id": "p1",
    "name": [{"given": ["Ana"], "family": "Silva"}],
    "gender": "female",
    "birthDate": "1950-03-01",
}

CONDITIONS = _bundle({
    "resourceType": "Condition",
    "code": {"coding": [{"code": "N18.4", "display": "Chronic kidney disease stage 4"}]},
    "clinicalStatus": {"coding": [{"code": "active"}]},
})

MEDICATIONS = _bundle({
    "resourceType": "MedicationStatement",
    "medicationCodeableConcept": {"coding": [{"display": "Warfarin"}]},
    "dosage": [{
        "doseAndRate": [{"doseQuantity": {"value": 5, "unit": "mg"}}],
        "timing": {"code": {"text": "OD"}},
    }],
})

ALLERGIES = _bundle({
    "resourceType": "AllergyIntolerance",
    "code": {"text": "Amoxicillin"},
    "verificationStatus": {"coding": [{"code": "confirmed"}]},
    "reaction": [{"severity": "severe", "manifestation": [{"coding": [{"display": "Hives"}]}]}],
})

OBSERVATIONS = _bundle(
    {"code": {"coding": [{"code": "33914-3"}]}, "valueQuantity": {"value": 24}},
    {"code": {"coding": [{"code": "33914-3"}]}, "valueQuantity": {"value": 41}},
    {"code": {"coding": [{"code": "2160-0"}]}, "valueQuantity": {"value": 2.6}},
    {"code": {"coding": [{"code": "29463-7"}]}, "valueQuantity": {"value": 58.5}},
)


def _fhir_get(url, params=None, timeout=None):
    if url.endswith("/Patient/p1"):
        return _response(PATIENT)
    if "/Patient/" in url:
        return _response({"resourceType": "OperationOutcome"}, status_code=404)
    resource = url.rsplit("/", 1)[-1]
    return _response({
        "Condition": CONDITIONS,
        "MedicationStatement": MEDICATIONS,
        "AllergyIntolerance": ALLERGIES,
        "Observation": OBSERVATIONS,
    }[resource])


# =============================================================================
# FHIR clinical source
# =============================================================================

def test_fhir_fetch_context():
    with patch("therapy_pipeline.sources.fhir_client.requests.get", side_effect=_fhir_get) as get:
        context = FHIRClinicalSource(fhir_url="http://fhir.test/fhir/").fetch_context("p1")

    assert context.patient_id == "p1"
    assert context.demographics.name == "Ana Silva"
    assert context.demographics.sex == "F"
    assert context.demographics.weight_kg == 58.5
    assert context.conditions[0].code == "N18.4"
    assert context.medications[0].drug == "Warfarin"
    assert context.medications[0].dose == "5mg"
    assert context.allergies[0].substance == "Amoxicillin"
    assert context.allergies[0].verified
    assert context.allergies[0].reaction == "Hives"

    # Newest observation wins (bundle sorted by -date)
    assert context.organ_function.egfr == 24
    assert context.organ_function.creatinine == 2.6
    assert context.has_flag(RiskFlag.SEVERE_RENAL_IMPAIRMENT)
    assert context.has_flag(RiskFlag.BETA_LACTAM_ALLERGY)
    assert context.has_flag(RiskFlag.ELDERLY_PATIENT)

    urls = [call.args[0] for call in get.call_args_list]
    assert urls[0] == "http://fhir.test/fhir/Patient/p1"


def test_fhir_patient_not_found():
    with patch("therapy_pipeline.sources.fhir_client.requests.get", side_effect=_fhir_get):
        with pytest.raises(PatientNotFoundError):
            FHIRClinicalSource(fhir_url="http://fhir.test/fhir").fetch_context("missing")


def test_fhir_server_error_propagates():
    with patch(
        "therapy_pipeline.sources.fhir_client.requests.get",
        return_value=_response({}, status_code=503),
    ):
        with pytest.raises(requests.HTTPError):
            FHIRClinicalSource(fhir_url="http://fhir.test/fhir").fetch_context("p1")


def test_age_from_birth_date():
    assert age_from_birth_date("1950-03-01", today=date(2020, 2, 28)) == 69
    assert age_from_birth_date("1950-03-01", today=date(2020, 3, 1)) == 70


def test_parse_helpers():
    med = parse_medication({"medicationCodeableConcept": {"text": "Metformin"},
                            "dosage": [{"text": "500mg twice daily"}]})
    assert med.drug == "Metformin"
    assert med.dose == "500mg twice daily"

    allergy = parse_allergy({"code": {"coding": [{"display": "Sulfa"}]}})
    assert allergy.severity == "unknown"
    assert not allergy.verified

    assert latest_observation_values([{"code": {}, "valueQuantity": {"value": 1}}]) == {}


# =============================================================================
# Stock sources
# =============================================================================

STOCK_RESULTS = [
    {"drug_id": "D1", "generic": "Levofloxacin", "brand": "Levomac", "strength": "500mg",
     "quantity": 10, "location": "Main Pharmacy", "price": 72.5},
    {"drug_id": "D2", "generic": "Levofloxacin", "brand": "Levomac", "strength": "250 mg",
     "quantity": 30, "location": "Ward 2"},
    {"drug_id": "D3", "generic": "Ciprofloxacin", "brand": "Ciplox", "strength": "500mg",
     "quantity": 5},
    {"drug_id": "D4", "generic": "Levofloxacin", "brand": "Tavanic", "strength": "750mg",
     "quantity": 0},
]


def _stock_source(payload):
    source = HTTPStockSource(base_url="http://stock.test/api/")
    source.session = Mock()
    source.session.get.return_value = _response(payload)
    return source


def test_http_stock_check_availability():
    source = _stock_source(STOCK_RESULTS)
    result = source.check_availability("Levofloxacin", "250mg")

    assert result.available
    assert [item.drug_id for item in result.items] == ["D2"]
    assert [item.generic for item in result.alternatives] == ["Ciprofloxacin"]
    source.session.get.assert_called_with(
        "http://stock.test/api/search", params={"q": "Levofloxacin"}, timeout=source.timeout
    )


def test_http_stock_nearest():
    assert _stock_source(STOCK_RESULTS).find_nearest_with_stock("Levofloxacin") == "Ward 2"
    assert _stock_source([]).find_nearest_with_stock("Levofloxacin") is None


def test_http_stock_rejects_malformed_payload():
    with pytest.raises(ValueError):
        _stock_source({"error": "bad query"}).check_availability("Levofloxacin")


def test_http_stock_requires_url():
    with patch("therapy_pipeline.sources.stock_http.Config.STOCK_API_URL", None):
        with pytest.raises(ValueError):
            HTTPStockSource()


def test_parse_stock_item_defaults():
    item = parse_stock_item({"id": 7, "inn": "Doxycycline", "quantity_available": "12"})
    assert item.drug_id == "7"
    assert item.generic == "Doxycycline"
    assert item.quantity == 12
    assert item.location == "Main Pharmacy"
    assert item.price is None


@pytest.mark.parametrize("item", [
    "Azithromycin",
    None,
    {"generic": 5},
    {"generic": "Azithromycin", "brand": ["Azee"]},
    {"generic": "Azithromycin", "quantity": [10]},
    {"generic": "Azithromycin", "price": {"amount": 3}},
    {"drug_id": {"id": 1}, "generic": "Azithromycin"},
])
def test_parse_stock_item_rejects_wrong_shapes(item):
    with pytest.raises(ValueError):
        parse_stock_item(item)


def test_http_stock_rejects_non_object_items():
    with pytest.raises(ValueError):
        _stock_source(["Azithromycin"]).check_availability("Azithromycin")


def test_in_memory_stock_matches_brand_and_strength(stock_source):
    assert stock_source.check_availability("Levomac", "250mg").available
    assert stock_source.check_availability("levofloxacin", "250 mg").available
    assert not stock_source.check_availability("Levofloxacin", "750mg").available
    assert not stock_source.check_availability("Unobtainium").available


def test_in_memory_stock_alternatives_share_class(stock_source):
    result = stock_source.check_availability("Levofloxacin")
    assert {item.generic for item in result.alternatives} == {"Ciprofloxacin"}


def test_in_memory_nearest_prefers_largest_quantity():
    source = InMemoryStockSource([
        StockItem("A", "Azithromycin", quantity=5, location="Clinic"),
        StockItem("B", "Azithromycin", quantity=50, location="Central Store"),
    ])
    assert source.find_nearest_with_stock("Azithromycin") == "Central Store"


# =============================================================================
# Advisory generator
# =============================================================================

def test_ollama_enrich():
    advisor = OllamaAdvisor(base_url="http://ollama.test/", model="test-model", timeout=3)
    content = json.dumps({"reasoning": ["Covers atypicals", "  ", "Once daily"]})
    advisor.session = Mock()
    advisor.session.post.return_value = _response({"message": {"content": content}})

    bullets = advisor.enrich(make_context(), "Bacterial Respiratory Infection", "pneumonia")

    assert bullets == ["Covers atypicals", "Once daily"]
    url = advisor.session.post.call_args.args[0]
    payload = advisor.session.post.call_args.kwargs["json"]
    assert url == "http://ollama.test/api/chat"
    assert payload["model"] == "test-model"
    assert payload["format"] == "json"


def test_ollama_bad_response_raises_value_error():
    advisor = OllamaAdvisor(base_url="http://ollama.test")
    advisor.session = Mock()
    advisor.session.post.return_value = _response({"message": {"content": "not json"}})
    with pytest.raises(ValueError):
        advisor.enrich(make_context(), "Fever", "fever")


@pytest.mark.parametrize("payload", [
    {"message": None},
    {"message": "plain text"},
    {"message": {"content": None}},
    ["not", "an", "object"],
])
def test_ollama_malformed_envelope_raises_value_error(payload):
    advisor = OllamaAdvisor(base_url="http://ollama.test")
    advisor.session = Mock()
    advisor.session.post.return_value = _response(payload)
    with pytest.raises(ValueError):
        advisor.enrich(make_context(), "Fever", "fever")


def test_parse_reasoning():
    assert parse_reasoning('{"reasoning": ["a", "b"]}') == ["a", "b"]
    with pytest.raises(ValueError):
        parse_reasoning('{"reasons": []}')


def test_build_prompt_includes_context(pt001_context):
    prompt = build_prompt(pt001_context, "Urinary Tract Infection", "dysuria")
    assert "Penicillin" in prompt
    assert "eGFR: 48" in prompt
    assert "dysuria" in prompt


def test_null_advisor():
    assert NullAdvisor().enrich(make_context(), "Fever", "fever") == []


# =============================================================================
# Guarded calls
# =============================================================================

def test_guarded_call_success():
    result = guarded_call("stock", "check", lambda: StockResult(available=True),
                          fallback=StockResult(available=False), timeout=1)
    assert result.ok
    assert result.value.available


def test_guarded_call_error_degrades():
    def boom():
        raise requests.ConnectionError("refused")

    result = guarded_call("stock", "check", boom, fallback=None, timeout=1,
                          fallback_description="treated as unavailable")
    assert not result.ok
    assert result.value is None
    assert result.degraded.source == "stock"
    assert result.degraded.reason == "refused"
    assert result.degraded.fallback == "treated as unavailable"


def test_guarded_call_timeout():
    start = time.monotonic()
    result = guarded_call("advisory", "enrich", lambda: time.sleep(1) or ["late"],
                          fallback=[], timeout=0.05)
    assert time.monotonic() - start < 0.9
    assert result.value == []
    assert "timed out" in result.degraded.reason


def test_guarded_call_degrades_on_malformed_adapter_response():
    source = _stock_source([{"generic": 5, "quantity": 3}])
    result = guarded_call("stock", "check_availability:Azithromycin",
                          lambda: source.check_availability("Azithromycin"),
                          fallback=StockResult(available=False), timeout=1)
    assert not result.ok
    assert not result.value.available
    assert "generic" in result.degraded.reason


def test_guarded_call_errors_outside_collaborator_contract_propagate():
    def broken():
        raise KeyError("bug")

    with pytest.raises(KeyError):
        guarded_call("stock", "check", broken, fallback=None, timeout=1)
