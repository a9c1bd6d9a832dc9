"""End-to-end tests of the therapy pipeline state machine."""

import sqlite3
from unittest.mock import Mock

import pytest

from conftest import (
    EmptyStockSource,
    FailingAdvisor,
    FailingStockSource,
    SlowAdvisor,
    StaticAdvisor,
    make_candidate,
    make_record,
)
from therapy_pipeline.errors import InvariantViolation, PatientNotFoundError
from therapy_pipeline.generator import CandidateGenerator, GenerationResult
from therapy_pipeline.indications import IndicationMapping
from therapy_pipeline.models import (
    AvailabilityRecord,
    DecisionStatus,
    FindingKind,
    FindingSeverity,
    PipelineStage,
)
from therapy_pipeline.pipeline import TherapyPipeline, rank_by_confidence, rank_candidates
from therapy_pipeline.sources.advisory import FALLBACK_REASONING, OllamaAdvisor
from therapy_pipeline.sources.base import AuditSink
from therapy_pipeline.sources.memory import InMemoryClinicalSource
from therapy_pipeline.sources.stock_http import HTTPStockSource


ALL_STAGES = (
    PipelineStage.GENERATING,
    PipelineStage.SCREENING,
    PipelineStage.RANKING,
    PipelineStage.RESOLVING,
    PipelineStage.DECIDED,
)


@pytest.fixture
def pipeline(clinical_source, stock_source):
    return TherapyPipeline(clinical_source, stock_source)


def test_penicillin_allergic_respiratory_infection(pipeline):
    """eGFR 48 + penicillin allergy: amoxicillin excluded, non-beta-lactam chosen."""
    decision = pipeline.run_pipeline("PT001", "bacterial respiratory infection")

    assert decision.status == DecisionStatus.ACCEPTED
    assert decision.indication == "bacterial_respiratory"
    assert decision.chosen.generic_name == "Azithromycin"

    excluded = {x.drug: x for x in decision.prescreen_exclusions}
    assert "Amoxicillin" in excluded
    assert any(
        f.kind == FindingKind.ALLERGY and f.severity == FindingSeverity.HARD_BLOCK
        for f in excluded["Amoxicillin"].findings
    )
    ranked_names = [c.generic_name for c in decision.ranked]
    assert "Amoxicillin" not in ranked_names

    # Levofloxacin 250mg is stocked; cefuroxime 250mg is not, so it drops to last
    assert ranked_names == ["Azithromycin", "Levofloxacin", "Cefuroxime"]
    assert decision.stage_trail == ALL_STAGES


def test_findings_ordered_by_candidate_then_severity(pipeline):
    decision = pipeline.run_pipeline("PT001", "bacterial respiratory infection")

    order = [e.candidate.generic_name for e in decision.evaluations]
    assert order == ["Azithromycin", "Cefuroxime", "Levofloxacin"]

    positions = [order.index(f.drug) for f in decision.findings]
    assert positions == sorted(positions)
    cefuroxime = [f for f in decision.findings if f.drug == "Cefuroxime"]
    assert cefuroxime and all(f.severity == FindingSeverity.WARNING for f in cefuroxime)


def test_severe_renal_uti(pipeline):
    """eGFR 25: nitrofurantoin carries a renal hard block and is never chosen."""
    decision = pipeline.run_pipeline("TEST-RENAL", "UTI")

    assert decision.status == DecisionStatus.ACCEPTED
    nitro = next(e for e in decision.evaluations if e.candidate.generic_name == "Nitrofurantoin")
    assert not nitro.verdict.passed
    assert nitro.verdict.hard_blocks[0].kind == FindingKind.RENAL

    assert decision.chosen.generic_name != "Nitrofurantoin"
    assert "Nitrofurantoin" not in [c.generic_name for c in decision.alternatives]
    assert decision.chosen.generic_name == "Trimethoprim-Sulfamethoxazole"
    assert decision.chosen.dose == "480mg"

    # The blocking finding is part of the aggregated summary
    assert any(
        f.drug == "Nitrofurantoin" and f.severity == FindingSeverity.HARD_BLOCK
        for f in decision.findings
    )


def test_unmatched_intent_blocks_without_candidates(pipeline):
    decision = pipeline.run_pipeline("PT002", "unrelated nonsense text")

    assert decision.status == DecisionStatus.BLOCKED_NO_CANDIDATES
    assert decision.chosen is None
    assert decision.alternatives == ()
    assert decision.findings == ()
    assert decision.stage_trail == (PipelineStage.GENERATING, PipelineStage.DECIDED)


STREP_ONLY = {
    "strep": IndicationMapping(
        indication_id="strep",
        display_name="Streptococcal Pharyngitis",
        drug_class="Antibiotic",
        keywords=("strep",),
        preferred=("Amoxicillin", "Amoxicillin-Clavulanate"),
    )
}


def test_all_candidates_removed_by_prescreen(clinical_source, stock_source):
    """Penicillin-only indication for a penicillin-allergic patient."""
    generator = CandidateGenerator(indications=STREP_ONLY)
    pipeline = TherapyPipeline(clinical_source, stock_source, generator=generator)

    decision = pipeline.run_pipeline("PT001", "strep throat")

    assert decision.status == DecisionStatus.BLOCKED_ALL_UNSAFE
    assert decision.chosen is None
    assert [e.drug for e in decision.prescreen_exclusions] == [
        "Amoxicillin", "Amoxicillin-Clavulanate"
    ]
    assert decision.findings
    assert all(f.severity == FindingSeverity.HARD_BLOCK for f in decision.findings)
    assert [f.drug for f in decision.findings][0] == "Amoxicillin"
    assert {f.drug for f in decision.findings} == {"Amoxicillin", "Amoxicillin-Clavulanate"}
    assert decision.to_dict()["findings"]
    assert decision.stage_trail == (PipelineStage.GENERATING, PipelineStage.DECIDED)


def test_all_candidates_unsafe_at_screening(clinical_source, stock_source):
    generator = CandidateGenerator(indications=STREP_ONLY, prescreen=False)
    pipeline = TherapyPipeline(clinical_source, stock_source, generator=generator)

    decision = pipeline.run_pipeline("PT001", "strep throat")

    assert decision.status == DecisionStatus.BLOCKED_ALL_UNSAFE
    assert decision.chosen is None
    assert decision.findings
    assert all(not e.verdict.passed for e in decision.evaluations)
    assert decision.availability == ()
    assert decision.stage_trail == (
        PipelineStage.GENERATING, PipelineStage.SCREENING, PipelineStage.DECIDED
    )


def test_blocked_and_accepted_share_finding_structure(pipeline):
    accepted = pipeline.run_pipeline("PT001", "pneumonia").to_dict()
    blocked = pipeline.run_pipeline("PT002", "unrelated nonsense text").to_dict()
    assert set(accepted) == set(blocked)


def test_unknown_patient(pipeline):
    with pytest.raises(PatientNotFoundError) as exc:
        pipeline.run_pipeline("NOPE", "UTI")
    assert exc.value.patient_id == "NOPE"


def test_rank_candidates_available_first_then_confidence():
    candidates = [make_candidate("A", 0.85), make_candidate("B", 0.70), make_candidate("C", 0.55)]
    availability = [
        AvailabilityRecord(drug="A", available=False),
        AvailabilityRecord(drug="B", available=True),
        AvailabilityRecord(drug="C", available=True),
    ]
    assert [c.generic_name for c in rank_candidates(candidates, availability)] == ["B", "C", "A"]


def test_rank_candidates_stable_and_idempotent():
    """Ties keep generation order; ranking a ranked list changes nothing."""
    candidates = [
        make_candidate("First", 0.70, generation_rank=0),
        make_candidate("Second", 0.70, generation_rank=1),
        make_candidate("Third", 0.70, generation_rank=2),
    ]
    availability = [AvailabilityRecord(drug=c.generic_name, available=True) for c in candidates]

    once = rank_candidates(candidates, availability)
    by_drug = {a.drug: a for a in availability}
    twice = rank_candidates(once, [by_drug[c.generic_name] for c in once])

    assert [c.generic_name for c in once] == ["First", "Second", "Third"]
    assert once == twice
    assert rank_by_confidence(once) == once


def test_rank_candidates_length_mismatch():
    with pytest.raises(InvariantViolation):
        rank_candidates([make_candidate("A")], [])


def test_advisory_bullets_appended(clinical_source, stock_source):
    advisor = StaticAdvisor(["Covers atypical organisms"])
    pipeline = TherapyPipeline(clinical_source, stock_source, advisor=advisor)
    plain = TherapyPipeline(clinical_source, stock_source).run_pipeline("PT001", "pneumonia")

    decision = pipeline.run_pipeline("PT001", "pneumonia")

    assert advisor.calls == 1
    assert decision.chosen.reasoning[-1] == "Covers atypical organisms"
    assert decision.degradations == ()
    # Advisory text never changes drug or dose
    assert [(c.generic_name, c.dose) for c in decision.ranked] == [
        (c.generic_name, c.dose) for c in plain.ranked
    ]


def test_failing_advisor_falls_back(clinical_source, stock_source):
    pipeline = TherapyPipeline(clinical_source, stock_source, advisor=FailingAdvisor())
    decision = pipeline.run_pipeline("PT001", "pneumonia")

    assert decision.status == DecisionStatus.ACCEPTED
    assert decision.chosen.reasoning[-1] == FALLBACK_REASONING
    assert [d.source for d in decision.degradations] == ["advisory"]


def test_slow_advisor_times_out(clinical_source, stock_source):
    pipeline = TherapyPipeline(
        clinical_source, stock_source, advisor=SlowAdvisor(delay=2), advisory_timeout=0.1
    )
    decision = pipeline.run_pipeline("PT001", "pneumonia")

    assert decision.chosen.reasoning[-1] == FALLBACK_REASONING
    assert "timed out" in decision.degradations[0].reason


def test_malformed_advisory_response_falls_back(clinical_source, stock_source):
    advisor = OllamaAdvisor(base_url="http://ollama.test")
    advisor.session = Mock()
    advisor.session.post.return_value.json.return_value = {"message": None}
    pipeline = TherapyPipeline(clinical_source, stock_source, advisor=advisor)

    decision = pipeline.run_pipeline("PT001", "pneumonia")

    assert decision.status == DecisionStatus.ACCEPTED
    assert decision.chosen.reasoning[-1] == FALLBACK_REASONING
    assert [d.source for d in decision.degradations] == ["advisory"]


@pytest.mark.parametrize("payload", [
    ["Azithromycin"],
    [{"drug_id": "D1", "generic": 5, "quantity": 10}],
    [{"drug_id": "D1", "generic": "Azithromycin", "quantity": [10]}],
])
def test_malformed_stock_response_degrades(clinical_source, payload):
    stock = HTTPStockSource(base_url="http://stock.test/api")
    stock.session = Mock()
    stock.session.get.return_value.json.return_value = payload
    pipeline = TherapyPipeline(clinical_source, stock)

    decision = pipeline.run_pipeline("PT001", "pneumonia")

    assert decision.status == DecisionStatus.ACCEPTED
    assert decision.chosen.generic_name == "Azithromycin"
    assert all(record.degraded and not record.available for record in decision.availability)
    assert {d.source for d in decision.degradations} == {"stock"}


def test_no_advisor_uses_fallback_without_degradation(pipeline):
    decision = pipeline.run_pipeline("PT001", "pneumonia")
    assert decision.chosen.reasoning[-1] == FALLBACK_REASONING
    assert decision.degradations == ()


def test_stock_outage_degrades_but_decides(clinical_source):
    pipeline = TherapyPipeline(clinical_source, FailingStockSource())
    decision = pipeline.run_pipeline("PT001", "pneumonia")

    assert decision.status == DecisionStatus.ACCEPTED
    assert decision.chosen.generic_name == "Azithromycin"
    assert all(not a.available for a in decision.availability)
    assert decision.degradations
    assert {d.source for d in decision.degradations} == {"stock"}


def test_all_unavailable_keeps_confidence_order(clinical_source):
    decision = TherapyPipeline(clinical_source, EmptyStockSource()).run_pipeline("PT001", "pneumonia")
    assert [c.confidence for c in decision.ranked] == sorted(
        (c.confidence for c in decision.ranked), reverse=True
    )


class _BadGenerator(CandidateGenerator):
    """Returns confidence rising with rank."""

    def generate(self, context, intent_text):
        return GenerationResult(
            indication=None,
            candidates=(make_candidate("A", 0.40), make_candidate("B", 0.80)),
        )


def test_invariant_violation_halts_run(clinical_source, stock_source):
    pipeline = TherapyPipeline(clinical_source, stock_source, generator=_BadGenerator())
    with pytest.raises(InvariantViolation):
        pipeline.run_pipeline("PT001", "anything")


def test_decision_metadata(pipeline):
    decision = pipeline.run_pipeline("PT002", "acid reflux")
    assert decision.decision_id.startswith("PD-")
    assert decision.pipeline_version == "1.0.0"
    assert decision.decided_at.tzinfo is not None
    assert decision.patient_id == "PT002"
    assert decision.intent_text == "acid reflux"
    assert all(e.verdict.evaluated_at is not None for e in decision.evaluations)
    assert len(decision.availability) == len(decision.ranked)


def test_run_and_persist(clinical_source, stock_source, audit_store):
    pipeline = TherapyPipeline(clinical_source, stock_source, audit_sink=audit_store)
    decision, audit_id = pipeline.run_and_persist("PT001", "pneumonia", actor_id="pharm-001")

    assert audit_id.startswith("TD-")
    stored = audit_store.get(audit_id)
    assert stored["decision_id"] == decision.decision_id
    assert stored["actor_id"] == "pharm-001"
    assert stored["decision"]["chosen"]["generic_name"] == "Azithromycin"


def test_run_and_persist_without_actor(clinical_source, stock_source, audit_store):
    pipeline = TherapyPipeline(clinical_source, stock_source, audit_sink=audit_store)
    decision, audit_id = pipeline.run_and_persist("PT001", "pneumonia", actor_id="")
    assert audit_id is None
    assert audit_store.stats()["total"] == 0


class _BrokenSink(AuditSink):
    def persist(self, decision, actor_id):
        raise sqlite3.OperationalError("database is locked")


def test_persist_failure_still_returns_decision(clinical_source, stock_source):
    pipeline = TherapyPipeline(clinical_source, stock_source, audit_sink=_BrokenSink())
    decision, audit_id = pipeline.run_and_persist("PT001", "pneumonia", actor_id="pharm-001")
    assert audit_id is None
    assert decision.status == DecisionStatus.ACCEPTED


def test_custom_records_source():
    source = InMemoryClinicalSource({"X1": make_record(patient_id="X1", labs={"egfr": 90})})
    decision = TherapyPipeline(source, EmptyStockSource()).run_pipeline("X1", "fever")
    assert decision.chosen.generic_name == "Paracetamol"
    with pytest.raises(PatientNotFoundError):
        source.fetch_context("PT001")
