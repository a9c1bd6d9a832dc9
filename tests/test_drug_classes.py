"""Tests for the drug class heuristic."""

from therapy_pipeline.drug_classes import (
    DrugClass,
    classify,
    is_class_label,
    matches_term,
    primary_class,
    shares_class,
)


def test_classify_members_any_case():
    assert classify("Amoxicillin") == [DrugClass.PENICILLIN]
    assert classify("AZITHROMYCIN") == [DrugClass.MACROLIDE]
    assert DrugClass.CEPHALOSPORIN in classify("cefuroxime axetil")


def test_classify_combination_and_allergen_text():
    assert DrugClass.PENICILLIN in classify("Amoxicillin-Clavulanate")
    assert DrugClass.SULFONAMIDE in classify("Sulfa drugs")
    assert DrugClass.NSAID in classify("Aspirin")


def test_classify_class_labels():
    assert classify("NSAIDs") == [DrugClass.NSAID]
    assert DrugClass.PENICILLIN in classify("beta-lactam antibiotics")
    assert classify("ACE inhibitors") == [DrugClass.ACE_INHIBITOR]


def test_classify_unknown():
    assert classify("Unobtainium") == []
    assert classify("") == []
    assert primary_class("Unobtainium") is None


def test_labels_match_whole_words_only():
    """'arb' must not match inside an unrelated word."""
    assert DrugClass.ARB not in classify("Carbamazepine")
    assert DrugClass.ARB in classify("ARBs")


def test_matches_term():
    assert matches_term("Ibuprofen", "nsaids")
    assert not matches_term("Paracetamol", "nsaids")
    assert matches_term("Trimethoprim-Sulfamethoxazole", "trimethoprim")
    assert not matches_term("Azithromycin", "")


def test_is_class_label():
    assert is_class_label("nsaids")
    assert is_class_label("Ace Inhibitors")
    assert not is_class_label("ibuprofen")


def test_shares_class():
    assert shares_class("Levofloxacin", "Ciprofloxacin")
    assert not shares_class("Levofloxacin", "Azithromycin")
    assert primary_class("Levofloxacin") == DrugClass.FLUOROQUINOLONE
