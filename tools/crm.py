import httpx
from typing import Any, Dict, List, Optional, Type, TypeVar
from urllib.parse import quote
from loguru import logger
from pydantic import BaseModel, ValidationError

from graph.errors import StoreConflict, StoreUnavailable
from graph.models import Classification, Lead, UserData
from tools.stores import UNCHECKED, ClassificationStore, LeadStore, UserDataStore

Model = TypeVar("Model", bound=BaseModel)

class CRMClient:
    """Thin async HTTP client for one CRM service; maps transport failures to StoreError."""

    def __init__(self, base_url: str, store: str, timeout: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.store = store
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None,
                      headers: Optional[Dict[str, str]] = None) -> Optional[Dict[str, Any]]:
        """Returns the decoded body, or None for a 404 on GET."""
        try:
            response = await self.client.request(method, path, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"{self.store} CRM request {method} {path} failed: {e}")
            raise StoreUnavailable(f"{self.store} store unreachable: {e}", store=self.store)

        if response.status_code == 404 and method == "GET":
            return None
        # 412: the If-Match/If-None-Match precondition failed, someone else wrote first
        if response.status_code in (409, 412):
            logger.warning(f"{self.store} CRM conflict on {method} {path}")
            raise StoreConflict(f"{self.store} store rejected a conflicting write", store=self.store)
        if response.status_code >= 400:
            logger.error(f"{self.store} CRM returned {response.status_code} for {method} {path}")
            raise StoreUnavailable(
                f"{self.store} store returned HTTP {response.status_code}", store=self.store
            )
        try:
            return response.json()
        except ValueError:
            raise StoreUnavailable(f"{self.store} store returned a non-JSON body", store=self.store)

    def parse(self, model: Type[Model], record: Any) -> Model:
        try:
            return model.model_validate(record)
        except ValidationError as e:
            logger.error(f"{self.store} CRM returned a malformed {model.__name__}: {e.error_count()} errors")
            raise StoreUnavailable(
                f"{self.store} store returned a malformed {model.__name__} record", store=self.store
            )

    async def ping(self) -> bool:
        try:
            response = await self.client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"{self.store} CRM health check failed: {e}")
            return False

    async def aclose(self):
        await self.client.aclose()

def _path_key(value: str) -> str:
    return quote(value, safe="")

def precondition(previous, version_field: str) -> Optional[Dict[str, str]]:
    """Conditional-write headers so a concurrent writer gets a 412 instead of being overwritten."""
    if previous is UNCHECKED:
        return None
    if previous is None:
        return {"If-None-Match": "*"}
    return {"If-Match": getattr(previous, version_field).isoformat()}

class LeadCRMStore(LeadStore):
    def __init__(self, client: CRMClient):
        self.client = client

    async def get(self, phone_number: str) -> Optional[Lead]:
        data = await self.client.request("GET", f"/api/leads/{_path_key(phone_number)}")
        return self.client.parse(Lead, data["lead"]) if data and data.get("lead") else None

    async def upsert(self, lead: Lead, previous=UNCHECKED) -> Lead:
        data = await self.client.request(
            "PUT",
            f"/api/leads/{_path_key(lead.phone_number)}",
            json=lead.model_dump(mode="json", by_alias=True),
            headers=precondition(previous, "updated_at"),
        )
        return self.client.parse(Lead, data["lead"]) if data and data.get("lead") else lead

    async def list_all(self) -> List[Lead]:
        data = await self.client.request("GET", "/api/leads") or {}
        return [self.client.parse(Lead, item) for item in data.get("leads", [])]

    async def ping(self) -> bool:
        return await self.client.ping()

    async def aclose(self) -> None:
        await self.client.aclose()

class UserDataCRMStore(UserDataStore):
    def __init__(self, client: CRMClient):
        self.client = client

    async def get(self, phone_number: str) -> Optional[UserData]:
        data = await self.client.request("GET", f"/api/users/{_path_key(phone_number)}")
        return self.client.parse(UserData, data["user"]) if data and data.get("user") else None

    async def upsert(self, user_data: UserData, previous=UNCHECKED) -> UserData:
        data = await self.client.request(
            "PUT",
            f"/api/users/{_path_key(user_data.phone_number)}",
            json=user_data.model_dump(mode="json", by_alias=True),
            headers=precondition(previous, "last_updated"),
        )
        return self.client.parse(UserData, data["user"]) if data and data.get("user") else user_data

    async def list_all(self) -> List[UserData]:
        data = await self.client.request("GET", "/api/users") or {}
        return [self.client.parse(UserData, item) for item in data.get("users", [])]

    async def ping(self) -> bool:
        return await self.client.ping()

    async def aclose(self) -> None:
        await self.client.aclose()

class ClassificationCRMStore(ClassificationStore):
    def __init__(self, client: CRMClient):
        self.client = client

    async def get(self, user_id: str) -> Optional[Classification]:
        data = await self.client.request("GET", f"/api/classifications/{_path_key(user_id)}")
        if not data or not data.get("classification"):
            return None
        return self.client.parse(Classification, data["classification"])

    async def upsert(self, classification: Classification) -> Classification:
        data = await self.client.request(
            "PUT",
            f"/api/classifications/{_path_key(classification.user_id)}",
            json=classification.model_dump(mode="json", by_alias=True),
        )
        if data and data.get("classification"):
            return self.client.parse(Classification, data["classification"])
        return classification

    async def list_all(self) -> List[Classification]:
        data = await self.client.request("GET", "/api/classifications") or {}
        return [self.client.parse(Classification, item) for item in data.get("classifications", [])]

    async def history(self, user_id: str) -> List[Classification]:
        data = await self.client.request("GET", f"/api/classifications/{_path_key(user_id)}/history") or {}
        return [self.client.parse(Classification, item) for item in data.get("classifications", [])]

    async def ping(self) -> bool:
        return await self.client.ping()

    async def aclose(self) -> None:
        await self.client.aclose()
