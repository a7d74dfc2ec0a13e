import uuid
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional, Tuple
from loguru import logger

from graph.errors import InvalidFieldValue, MalformedInput
from graph.models import Classification, ClassificationResult, Factor, FactorImpact, UserData
from graph.schema import coerce, is_present

ACCEPTANCE_THRESHOLD = 60
MAX_REASON_FACTORS = 3

HARD_RULES = {
    "medicare_age": 65,
    "adult_age": 18,
    "suitable_plans": ["Part C", "Advantage"],
    "partial_plans": ["Part B", "Supplement"],
    "disqualifying_conditions": ["total blindness", "hospice care", "end-stage renal disease"],
}

WEIGHTS = {
    "age_medicare": 30,
    "age_under_medicare": 0,
    "age_minor": -40,
    "plan_suitable": 20,
    "plan_partial": 10,
    "plan_unsuitable": -15,
    "colorblind": 25,
    "not_colorblind": -25,
    "medicare_number": 10,
    "history_clear": 15,
    "history_manageable": 5,
    "history_extensive": -15,
    "disqualifying_condition": -50,
}

# Stable id namespace so identical input always produces the same classificationId
CLASSIFICATION_NAMESPACE = uuid.UUID("6f1c2a0e-4b8d-4c55-9a3e-2d7b5e8f9c10")

@dataclass(frozen=True)
class Rule:
    name: str
    fields: Tuple[str, ...]
    evaluate: Callable[..., Optional[Tuple[int, FactorImpact, str]]]

def _impact(weight: int) -> FactorImpact:
    if weight > 0:
        return FactorImpact.POSITIVE
    if weight < 0:
        return FactorImpact.NEGATIVE
    return FactorImpact.NEUTRAL

def age_bracket(age: int):
    if age >= HARD_RULES["medicare_age"]:
        weight = WEIGHTS["age_medicare"]
        return weight, _impact(weight), f"Age {age} meets the Medicare age requirement"
    if age >= HARD_RULES["adult_age"]:
        weight = WEIGHTS["age_under_medicare"]
        return weight, FactorImpact.NEUTRAL, f"Age {age} is under 65, eligibility needs disability qualification"
    weight = WEIGHTS["age_minor"]
    return weight, _impact(weight), f"Age {age} is below the minimum adult age"

def plan_level_fit(plan: str):
    if plan in HARD_RULES["suitable_plans"]:
        weight = WEIGHTS["plan_suitable"]
        return weight, _impact(weight), f"{plan} plan covers vision equipment benefits"
    if plan in HARD_RULES["partial_plans"]:
        weight = WEIGHTS["plan_partial"]
        return weight, FactorImpact.NEUTRAL, f"{plan} plan gives partial vision coverage"
    weight = WEIGHTS["plan_unsuitable"]
    return weight, _impact(weight), f"{plan} plan does not cover vision equipment"

def colorblindness(has_colorblindness: bool):
    if has_colorblindness:
        weight = WEIGHTS["colorblind"]
        return weight, _impact(weight), "Diagnosed color vision deficiency"
    weight = WEIGHTS["not_colorblind"]
    return weight, _impact(weight), "No color vision deficiency reported"

def medicare_number(number: str):
    weight = WEIGHTS["medicare_number"]
    return weight, _impact(weight), "Medicare number on file"

def medical_history(conditions: List[str]):
    count = len(conditions)
    if count == 0:
        weight = WEIGHTS["history_clear"]
        return weight, _impact(weight), "No chronic conditions reported"
    if count <= 2:
        weight = WEIGHTS["history_manageable"]
        return weight, FactorImpact.NEUTRAL, f"{count} manageable chronic condition(s)"
    weight = WEIGHTS["history_extensive"]
    return weight, _impact(weight), f"{count} chronic conditions reported"

def disqualifying_conditions(conditions: List[str]):
    reported = {" ".join(c.lower().split()) for c in conditions}
    found = [c for c in HARD_RULES["disqualifying_conditions"] if c in reported]
    if not found:
        return None
    weight = WEIGHTS["disqualifying_condition"]
    return weight, _impact(weight), f"Disqualifying condition: {', '.join(found)}"

DEFAULT_RULES: Tuple[Rule, ...] = (
    Rule("age_bracket", ("age",), age_bracket),
    Rule("plan_level_fit", ("planLevel",), plan_level_fit),
    Rule("colorblindness", ("hasColorblindness",), colorblindness),
    Rule("medicare_number", ("medicareNumber",), medicare_number),
    Rule("medical_history", ("medicalHistory",), medical_history),
    Rule("disqualifying_conditions", ("medicalHistory",), disqualifying_conditions),
)

class ClassificationEngine:
    """
    Weighted rule engine producing the eligibility verdict for a user record.

    Rules run in declaration order; a rule fires only when all its input fields are present.
    The output depends on the UserData alone, so repeated calls give identical results.
    """

    def __init__(self, rules=DEFAULT_RULES, threshold: int = ACCEPTANCE_THRESHOLD):
        self.rules = tuple(rules)
        self.threshold = threshold

    def _read(self, fields: Mapping[str, Any], name: str) -> Any:
        # Re-validate: records may come back from an external store
        try:
            return coerce(name, fields[name])
        except InvalidFieldValue as e:
            raise MalformedInput(f"Cannot classify record: {e.message}")

    @staticmethod
    def _has(fields: Mapping[str, Any], name: str) -> bool:
        # An explicit empty list is an answer ("no conditions")
        value = fields.get(name)
        return isinstance(value, list) or is_present(value)

    def score(self, user_data: UserData) -> Tuple[int, List[Factor]]:
        fields = user_data.merged_fields()
        raw_score = 0
        factors: List[Factor] = []
        for rule in self.rules:
            if not all(self._has(fields, name) for name in rule.fields):
                continue
            outcome = rule.evaluate(*(self._read(fields, name) for name in rule.fields))
            if outcome is None:
                continue
            weight, impact, description = outcome
            raw_score += weight
            factors.append(Factor(name=rule.name, description=description, impact=impact, weight=weight))
        return max(0, min(100, raw_score)), factors

    def summarize(self, score: int, result: ClassificationResult, factors: List[Factor]) -> str:
        if not factors:
            return (
                f"No eligibility factors could be evaluated; score {score}/100 is below "
                f"the acceptance threshold of {self.threshold}."
            )
        # Highest magnitude first; ties keep rule order
        key_factors = sorted(factors, key=lambda f: -abs(f.weight))[:MAX_REASON_FACTORS]
        details = "; ".join(f.description for f in key_factors)
        if result == ClassificationResult.ACCEPTABLE:
            return f"Meets eligibility criteria with a score of {score}/100. Key factors: {details}."
        return (
            f"Does not meet eligibility criteria with a score of {score}/100 "
            f"(threshold {self.threshold}). Key factors: {details}."
        )

    def classify(self, user_data: UserData) -> Classification:
        score, factors = self.score(user_data)
        result = ClassificationResult.ACCEPTABLE if score >= self.threshold else ClassificationResult.NOT_ACCEPTABLE
        classification_id = uuid.uuid5(
            CLASSIFICATION_NAMESPACE, f"{user_data.user_id}:{user_data.last_updated.isoformat()}"
        )
        logger.info(f"Classified user {user_data.user_id}: {result.value} ({score}/100, {len(factors)} factors)")
        return Classification(
            classification_id=str(classification_id),
            user_id=user_data.user_id,
            phone_number=user_data.phone_number,
            score=score,
            result=result,
            reason=self.summarize(score, result, factors),
            factors=factors,
            created_at=user_data.last_updated,
        )
