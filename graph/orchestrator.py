import asyncio
import uuid
import weakref
from typing import Any, Awaitable, Callable, Dict, Mapping
from langgraph.graph import StateGraph, START, END
from loguru import logger

from graph.errors import StoreError
from graph.models import ExistingCheck, SubmissionResult, SubmissionStage
from graph.nodes.classify import classify, complete
from graph.nodes.consume_token import consume_token
from graph.nodes.upsert_lead import upsert_lead
from graph.nodes.upsert_user_data import upsert_user_data
from graph.nodes.validate_token import validate_token
from graph.state import IntakeDeps, IntakeState
from tools.phone import mask_phone_number, normalize_phone_number

Node = Callable[[IntakeState, IntakeDeps], Awaitable[IntakeState]]

STEPS = [
    ("validate_token", validate_token),
    ("consume_token", consume_token),
    ("upsert_lead", upsert_lead),
    ("upsert_user_data", upsert_user_data),
    ("classify", classify),
    ("complete", complete),
]

def _bind(node: Node, deps: IntakeDeps):
    async def run(state: IntakeState) -> IntakeState:
        return await node(state, deps)
    run.__name__ = node.__name__
    return run

def branch_decision(state: IntakeState) -> str:
    return "failed" if state.get("error") else "continue"

def build_workflow(deps: IntakeDeps):
    """Build the submission saga: one node per stage, any failure ends the run."""
    workflow = StateGraph(IntakeState)

    for name, node in STEPS:
        workflow.add_node(name, _bind(node, deps))

    workflow.add_edge(START, STEPS[0][0])
    for (name, _), (next_name, _) in zip(STEPS, STEPS[1:]):
        workflow.add_conditional_edges(name, branch_decision, {"continue": next_name, "failed": END})
    workflow.add_edge(STEPS[-1][0], END)

    return workflow.compile()

class PhoneLocks:
    """One asyncio.Lock per phone number, dropped once no submission holds it."""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def for_phone(self, phone_number: str) -> asyncio.Lock:
        lock = self._locks.get(phone_number)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[phone_number] = lock
        return lock

class IntakeOrchestrator:
    """
    Coordinates one form submission across the token authority and the three stores.

    There is no transaction across stores: a failure leaves earlier writes in place and is
    raised with the stage reached. Retrying needs a freshly issued token, since the consumed
    one is never replayed; the upserts make such a retry safe.

    Token errors always report stage TOKEN_PENDING, whether the token was already used
    before this submission started or was lost to a concurrent one.

    Submissions for the same phone number run one at a time within this process, so the
    read-merge-write of the Lead and UserData records never interleaves. Across processes
    the stores' conditional upserts turn a lost race into StoreConflict instead.
    """

    def __init__(self, deps: IntakeDeps):
        self.deps = deps
        self.workflow = build_workflow(deps)
        self.phone_locks = PhoneLocks()

    async def submit(self, token: str, form_data: Mapping[str, Any]) -> SubmissionResult:
        submission_id = uuid.uuid4().hex
        log = logger.bind(submission_id=submission_id)
        phone = normalize_phone_number(str(form_data.get("phoneNumber") or ""))
        log.info(f"Starting submission for {mask_phone_number(phone)}")

        initial_state: IntakeState = {
            "submission_id": submission_id,
            "token": token,
            "form": dict(form_data),
            "stage": SubmissionStage.TOKEN_PENDING,
            "errors": [],
        }
        async with self.phone_locks.for_phone(phone):
            result = await self.workflow.ainvoke(initial_state)

        error = result.get("error")
        if error is not None:
            log.warning(f"Submission failed at {error.stage.value}: {error.code}")
            raise error

        return SubmissionResult(
            lead=result["lead"],
            user_data=result["user_data"],
            classification=result["classification"],
        )

    async def check_existing(self, phone_number: str) -> ExistingCheck:
        """
        Read-only lookup used before onboarding. Reports ``found`` only for a record whose
        latest submission finished; partial writes are reported as such, never as found.
        """
        phone = normalize_phone_number(phone_number)
        masked = mask_phone_number(phone)

        try:
            lead = await self.deps.leads.get(phone)
            user_data = await self.deps.user_data.get(phone)
            classification = await self.deps.classifications.get(user_data.user_id) if user_data else None
        except StoreError as e:
            logger.warning(f"Existing-record check degraded for {masked}: {e.message}")
            return ExistingCheck(
                found=False,
                partial=True,
                message=f"Could not confirm an existing record ({e.store} store unavailable)",
            )

        if lead is None and user_data is None:
            return ExistingCheck(found=False, message="No existing record for this phone number")

        name = (user_data.name if user_data else None) or (lead.name if lead else None)
        finished = (
            lead is not None
            and user_data is not None
            and classification is not None
            and classification.created_at == user_data.last_updated
        )
        if finished:
            logger.info(f"Existing record found for {masked}")
            return ExistingCheck(
                found=True,
                name=name,
                is_complete=user_data.is_complete,
                message=f"Lead found: {name}",
            )

        logger.warning(f"Partially written record for {masked}")
        return ExistingCheck(
            found=False,
            partial=True,
            name=name,
            is_complete=user_data.is_complete if user_data else None,
            message="A previous submission for this phone number did not finish; please submit the form again",
        )

    async def health(self) -> Dict[str, bool]:
        return {
            "token": await self.deps.tokens.store.ping(),
            "lead": await self.deps.leads.ping(),
            "user_data": await self.deps.user_data.ping(),
            "classification": await self.deps.classifications.ping(),
        }

    async def aclose(self) -> None:
        """Release the stores' connections (HTTP clients, Redis pool)."""
        await self.deps.tokens.store.aclose()
        await self.deps.leads.aclose()
        await self.deps.user_data.aclose()
        await self.deps.classifications.aclose()
