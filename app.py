import os
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from loguru import logger

# Import our modules
from graph.errors import IntakeError
from graph.models import ExistingCheck, FormSubmission, TokenIssued, TokenRequest, TokenValidation
from graph.orchestrator import IntakeOrchestrator
from graph.rules import ClassificationEngine
from graph.state import IntakeDeps
from tools.crm import CRMClient, ClassificationCRMStore, LeadCRMStore, UserDataCRMStore
from tools.settings import Settings
from tools.stores import InMemoryClassificationStore, InMemoryLeadStore, InMemoryUserDataStore
from tools.tokens import InMemoryTokenStore, RedisTokenStore, TokenAuthority, build_form_url

VERSION = "1.0.0"

def build_deps(settings: Settings) -> IntakeDeps:
    """Wire the collaborators from configuration; unset URLs fall back to in-memory stores."""
    if settings.redis_url:
        token_store = RedisTokenStore.from_url(settings.redis_url)
        logger.info("Using Redis token store")
    else:
        token_store = InMemoryTokenStore()
        logger.warning("REDIS_URL not set, using in-memory token store (not for production)")

    if settings.lead_crm_url:
        leads = LeadCRMStore(CRMClient(settings.lead_crm_url, "lead", settings.crm_timeout))
    else:
        leads = InMemoryLeadStore()
        logger.warning("LEAD_CRM_URL not set, using in-memory lead store")

    if settings.user_data_crm_url:
        user_data = UserDataCRMStore(CRMClient(settings.user_data_crm_url, "user_data", settings.crm_timeout))
    else:
        user_data = InMemoryUserDataStore()
        logger.warning("USER_DATA_CRM_URL not set, using in-memory user data store")

    if settings.classification_crm_url:
        classifications = ClassificationCRMStore(
            CRMClient(settings.classification_crm_url, "classification", settings.crm_timeout)
        )
    else:
        classifications = InMemoryClassificationStore()
        logger.warning("CLASSIFICATION_CRM_URL not set, using in-memory classification store")

    return IntakeDeps(
        tokens=TokenAuthority(token_store, ttl=timedelta(minutes=settings.form_token_ttl_minutes)),
        leads=leads,
        user_data=user_data,
        classifications=classifications,
        engine=ClassificationEngine(threshold=settings.classification_threshold),
    )

def create_app(settings: Optional[Settings] = None, deps: Optional[IntakeDeps] = None) -> FastAPI:
    settings = settings or Settings()
    deps = deps or build_deps(settings)
    orchestrator = IntakeOrchestrator(deps)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await orchestrator.aclose()
        logger.info("Store connections closed")

    app = FastAPI(
        title="Medicare Intake Router",
        description="Phone-verified form intake with lead, user data and eligibility classification",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    @app.post("/api/form-tokens", response_model=TokenIssued)
    async def issue_form_token(body: TokenRequest):
        """Called by the messaging service before it texts the form link."""
        form_token = await deps.tokens.issue(body.phone_number)
        return TokenIssued(
            token=form_token.token,
            phone_number=form_token.phone_number,
            expires_at=form_token.expires_at,
            form_url=build_form_url(settings.form_base_url, form_token.token, form_token.phone_number),
        )

    @app.get("/api/form-tokens/{token}", response_model=TokenValidation, response_model_exclude_none=True)
    async def validate_form_token(token: str):
        return await deps.tokens.validate(token)

    @app.post("/api/form-submission")
    async def submit_form(body: FormSubmission):
        """
        Main form submission endpoint.

        Expected payload:
        {
            "token": "<form token>",
            "formData": {"phoneNumber": "+15551234999", "name": "Jane Doe", "age": 68, ...}
        }
        """
        start_time = time.time()
        result = await orchestrator.submit(body.token, body.form_data)
        logger.info(f"Form submission completed in {time.time() - start_time:.2f}s")
        return {"status": "success", **result.model_dump(mode="json", by_alias=True)}

    @app.get("/api/check-existing/{phone_number}", response_model=ExistingCheck, response_model_exclude_none=True)
    async def check_existing(phone_number: str):
        return await orchestrator.check_existing(phone_number)

    # Read-side queries for the dashboard

    @app.get("/api/leads")
    async def list_leads():
        leads = await deps.leads.list_all()
        return {"count": len(leads), "leads": [l.model_dump(mode="json", by_alias=True) for l in leads]}

    @app.get("/api/leads/{phone_number}")
    async def get_lead(phone_number: str):
        lead = await deps.leads.get(phone_number)
        if lead is None:
            raise HTTPException(status_code=404, detail="Lead not found")
        return {"lead": lead.model_dump(mode="json", by_alias=True)}

    @app.get("/api/users")
    async def list_users():
        users = await deps.user_data.list_all()
        return {"count": len(users), "users": [u.model_dump(mode="json", by_alias=True) for u in users]}

    @app.get("/api/users/{phone_number}")
    async def get_user(phone_number: str):
        user = await deps.user_data.get(phone_number)
        if user is None:
            raise HTTPException(status_code=404, detail="User data not found")
        return {"user": user.model_dump(mode="json", by_alias=True)}

    @app.get("/api/classifications")
    async def list_classifications():
        classifications = await deps.classifications.list_all()
        return {
            "count": len(classifications),
            "classifications": [c.model_dump(mode="json", by_alias=True) for c in classifications],
        }

    @app.get("/api/classifications/{user_id}")
    async def get_classification(user_id: str):
        classification = await deps.classifications.get(user_id)
        if classification is None:
            raise HTTPException(status_code=404, detail="Classification not found")
        return {"classification": classification.model_dump(mode="json", by_alias=True)}

    @app.get("/api/classifications/{user_id}/history")
    async def get_classification_history(user_id: str):
        history = await deps.classifications.history(user_id)
        return {"count": len(history), "classifications": [c.model_dump(mode="json", by_alias=True) for c in history]}

    @app.get("/health")
    async def health():
        """Health check endpoint; reports reachability of every backing store."""
        stores = await orchestrator.health()
        return {
            "status": "healthy" if all(stores.values()) else "degraded",
            "timestamp": time.time(),
            "version": VERSION,
            "services": {name: "connected" if ok else "unreachable" for name, ok in stores.items()},
        }

    # Error handlers
    @app.exception_handler(IntakeError)
    async def intake_exception_handler(request: Request, exc: IntakeError):
        if exc.status_code >= 500:
            logger.error(f"{request.url.path} failed: {exc.code} {exc.message}")
        else:
            logger.info(f"{request.url.path} rejected: {exc.code}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={"status": "error", "message": "Internal server error"}
        )

    return app

settings = Settings()

# Configure logging
logger.add(settings.log_file, rotation="1 day", retention="7 days", level=settings.log_level)

app = create_app(settings)

if __name__ == "__main__":
    import uvicorn

    # Create logs directory if it doesn't exist
    os.makedirs("logs", exist_ok=True)

    logger.info("Starting Medicare Intake Router")

    uvicorn.run(
        "app:app",
        host=settings.host,
        port=settings.port,
        reload=True,
        log_level="info"
    )
