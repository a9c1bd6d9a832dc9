"""Safety rule modules."""

from .age_rules import AgeRules
from .allergy_rules import AllergyRules
from .condition_rules import ConditionRules
from .hepatic_rules import HepaticRules
from .interaction_rules import DrugInteractionRules
from .pregnancy_rules import PregnancyRules
from .renal_rules import RenalAdjustmentRules

__all__ = [
    "AgeRules",
    "AllergyRules",
    "ConditionRules",
    "DrugInteractionRules",
    "HepaticRules",
    "PregnancyRules",
    "RenalAdjustmentRules",
]
