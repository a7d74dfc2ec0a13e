from typing import Any, Mapping, Sequence
from loguru import logger

from graph.models import Completeness
from graph.schema import REQUIRED_FIELDS, FieldSpec, is_present

class CompletenessEvaluator:
    """Works out which required fields a user record still lacks. Pure, no I/O."""

    def __init__(self, required_fields: Sequence[FieldSpec] = REQUIRED_FIELDS):
        self.required_fields = tuple(required_fields)

    def evaluate(self, submitted_data: Mapping[str, Any]) -> Completeness:
        missing_fields = [
            spec.name
            for spec in self.required_fields
            if spec.is_required(submitted_data) and not is_present(submitted_data.get(spec.name))
        ]
        if missing_fields:
            logger.debug(f"Record incomplete, missing: {missing_fields}")
        return Completeness(is_complete=not missing_fields, missing_fields=missing_fields)

def evaluate(required_fields: Sequence[FieldSpec], submitted_data: Mapping[str, Any]) -> Completeness:
    return CompletenessEvaluator(required_fields).evaluate(submitted_data)
