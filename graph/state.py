from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, TypedDict

from graph.completeness import CompletenessEvaluator
from graph.errors import IntakeError
from graph.models import Classification, FormToken, Lead, SubmissionStage, UserData
from graph.rules import ClassificationEngine
from graph.schema import ParsedForm
from tools.stores import ClassificationStore, LeadStore, UserDataStore
from tools.tokens import TokenAuthority, utcnow

class IntakeState(TypedDict, total=False):
    """State shape for one form submission moving through the intake saga."""
    submission_id: str
    token: str
    form: Dict[str, Any]                 # raw formData payload
    parsed: ParsedForm                   # identity + bio/medicare sections
    phone_number: str                    # normalised, equals the token's phone
    stage: SubmissionStage               # last stage reached
    form_token: FormToken
    lead: Lead
    user_data: UserData
    classification: Classification
    failed_stage: Optional[SubmissionStage]
    error: Optional[IntakeError]
    errors: List[str]

@dataclass
class IntakeDeps:
    """Collaborators the saga nodes talk to; injected, never global."""
    tokens: TokenAuthority
    leads: LeadStore
    user_data: UserDataStore
    classifications: ClassificationStore
    evaluator: CompletenessEvaluator = field(default_factory=CompletenessEvaluator)
    engine: ClassificationEngine = field(default_factory=ClassificationEngine)
    clock: Callable[[], datetime] = utcnow

def fail(state: IntakeState, error: IntakeError) -> IntakeState:
    """Record a failure at the current stage; the graph routes straight to END afterwards."""
    if error.stage is None:
        error.stage = state.get("stage", SubmissionStage.TOKEN_PENDING)
    state["failed_stage"] = error.stage
    state["error"] = error
    state.setdefault("errors", []).append(f"{error.code}: {error.message}")
    state["stage"] = SubmissionStage.FAILED
    return state
