from loguru import logger

from graph.errors import IntakeError
from graph.models import SubmissionStage
from graph.state import IntakeDeps, IntakeState, fail

async def classify(state: IntakeState, deps: IntakeDeps) -> IntakeState:
    """Run the eligibility rules over the merged record and store the verdict."""
    log = logger.bind(submission_id=state.get("submission_id"))

    try:
        classification = deps.engine.classify(state["user_data"])
        classification = await deps.classifications.upsert(classification)
    except IntakeError as e:
        # Lead and UserData writes stay in place; the caller sees the stage reached
        log.error(f"Classification failed: {e.message}")
        return fail(state, e)

    state["classification"] = classification
    state["stage"] = SubmissionStage.CLASSIFIED
    return state

async def complete(state: IntakeState, deps: IntakeDeps) -> IntakeState:
    state["stage"] = SubmissionStage.DONE
    logger.bind(submission_id=state.get("submission_id")).info(
        f"Submission done: {state['classification'].result.value} ({state['classification'].score}/100)"
    )
    return state
