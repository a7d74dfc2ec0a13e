import uuid
from loguru import logger

from graph.errors import IntakeError
from graph.models import Lead, SubmissionStage
from graph.state import IntakeDeps, IntakeState, fail
from tools.phone import mask_phone_number

def build_lead(existing, parsed, phone, now) -> Lead:
    """Create a lead, or update the mutable fields of an existing one (leadId/createdAt stay)."""
    if existing is None:
        return Lead(
            lead_id=f"lead-{uuid.uuid4().hex[:12]}",
            name=parsed.name,
            phone_number=phone,
            email=parsed.email,
            city=parsed.city,
            created_at=now,
            updated_at=now,
        )
    return existing.model_copy(update={
        "name": parsed.name,
        "email": parsed.email or existing.email,
        "city": parsed.city or existing.city,
        "updated_at": now,
    })

async def upsert_lead(state: IntakeState, deps: IntakeDeps) -> IntakeState:
    log = logger.bind(submission_id=state.get("submission_id"))
    phone = state["phone_number"]
    log.info(f"Upserting lead for {mask_phone_number(phone)}")

    try:
        existing = await deps.leads.get(phone)
        lead = build_lead(existing, state["parsed"], phone, deps.clock())
        lead = await deps.leads.upsert(lead, previous=existing)
    except IntakeError as e:
        log.error(f"Lead upsert failed: {e.message}")
        return fail(state, e)

    state["lead"] = lead
    state["stage"] = SubmissionStage.LEAD_UPSERTED
    log.info(f"Lead {'updated' if existing else 'created'}: {lead.lead_id}")
    return state
