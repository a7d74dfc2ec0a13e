from loguru import logger

from graph.errors import IntakeError, TokenError
from graph.models import SubmissionStage
from graph.state import IntakeDeps, IntakeState, fail

async def consume_token(state: IntakeState, deps: IntakeDeps) -> IntakeState:
    # Single linearization point: of concurrent submissions with one token, only one gets past here
    log = logger.bind(submission_id=state.get("submission_id"))
    try:
        state["form_token"] = await deps.tokens.consume(state["token"])
    except TokenError as e:
        # Losing the race is the same outcome as arriving with a used token
        e.stage = SubmissionStage.TOKEN_PENDING
        log.warning(f"Token consume rejected: {e.code}")
        return fail(state, e)
    except IntakeError as e:
        log.error(f"Token consume failed: {e.message}")
        return fail(state, e)
    log.info("Form token consumed")
    return state
