from loguru import logger

from graph.errors import IntakeError, InvalidPhoneNumber, PhoneMismatch
from graph.models import SubmissionStage
from graph.schema import parse_form
from graph.state import IntakeDeps, IntakeState, fail
from tools.phone import is_valid_phone_number, mask_phone_number, normalize_phone_number

async def validate_token(state: IntakeState, deps: IntakeDeps) -> IntakeState:
    """Check the token, parse the form and make sure both name the same phone. No writes."""
    log = logger.bind(submission_id=state.get("submission_id"))
    log.info("Validating form token")

    try:
        form_token = await deps.tokens.check(state.get("token", ""))

        parsed = parse_form(state.get("form") or {})
        phone = normalize_phone_number(parsed.phone_number)
        if not is_valid_phone_number(phone):
            raise InvalidPhoneNumber(f"Phone number must be in E.164 format, got {parsed.phone_number!r}")
        if phone != form_token.phone_number:
            raise PhoneMismatch("Phone number does not match the one this form link was sent to")
    except IntakeError as e:
        log.warning(f"Submission rejected before any write: {e.code}")
        return fail(state, e)

    state["form_token"] = form_token
    state["parsed"] = parsed
    state["phone_number"] = phone
    state["stage"] = SubmissionStage.TOKEN_VALIDATED
    log.info(f"Token valid for {mask_phone_number(phone)}")
    return state
