import uuid
from loguru import logger

from graph.errors import IntakeError
from graph.models import SubmissionStage, UserData
from graph.state import IntakeDeps, IntakeState, fail

def merge_user_data(existing, parsed, phone, now, evaluator) -> UserData:
    """New values overwrite old ones per key; keys absent from this submission are kept."""
    bio_data = {**(existing.bio_data if existing else {}), **parsed.bio}
    medicare_data = {**(existing.medicare_data if existing else {}), **parsed.medicare}
    completeness = evaluator.evaluate({**bio_data, **medicare_data})

    return UserData(
        user_id=existing.user_id if existing else f"user-{uuid.uuid4().hex[:12]}",
        phone_number=phone,
        name=parsed.name,
        bio_data=bio_data,
        medicare_data=medicare_data,
        is_complete=completeness.is_complete,
        missing_fields=completeness.missing_fields,
        created_at=existing.created_at if existing else now,
        last_updated=now,
    )

async def upsert_user_data(state: IntakeState, deps: IntakeDeps) -> IntakeState:
    log = logger.bind(submission_id=state.get("submission_id"))
    phone = state["phone_number"]

    try:
        existing = await deps.user_data.get(phone)
        user_data = merge_user_data(existing, state["parsed"], phone, deps.clock(), deps.evaluator)
        user_data = await deps.user_data.upsert(user_data, previous=existing)
    except IntakeError as e:
        log.error(f"User data upsert failed: {e.message}")
        return fail(state, e)

    state["user_data"] = user_data
    state["stage"] = SubmissionStage.USERDATA_UPSERTED
    if user_data.is_complete:
        log.info(f"User data {user_data.user_id} complete")
    else:
        log.info(f"User data {user_data.user_id} missing: {user_data.missing_fields}")
    return state
