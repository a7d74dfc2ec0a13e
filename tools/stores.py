import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from graph.errors import StoreConflict
from graph.models import Classification, Lead, UserData

# Passed as `previous` when the caller does not care what is currently stored
UNCHECKED = object()

def version_matches(current_version: Optional[datetime], previous, version_field: str) -> bool:
    """Optimistic check: the stored record is still the one the caller read (None = absent)."""
    if previous is UNCHECKED:
        return True
    expected = getattr(previous, version_field) if previous is not None else None
    return current_version == expected

class LeadStore(ABC):
    """Sales lead records keyed by phone number."""
    name = "lead"

    @abstractmethod
    async def get(self, phone_number: str) -> Optional[Lead]: ...

    @abstractmethod
    async def upsert(self, lead: Lead, previous=UNCHECKED) -> Lead:
        """Write the lead; raise StoreConflict if the stored one is no longer `previous`."""

    @abstractmethod
    async def list_all(self) -> List[Lead]: ...

    @abstractmethod
    async def ping(self) -> bool: ...

    async def aclose(self) -> None:
        pass

class UserDataStore(ABC):
    """Medical and eligibility records keyed by phone number."""
    name = "user_data"

    @abstractmethod
    async def get(self, phone_number: str) -> Optional[UserData]: ...

    @abstractmethod
    async def upsert(self, user_data: UserData, previous=UNCHECKED) -> UserData:
        """Write the record; raise StoreConflict if the stored one is no longer `previous`."""

    @abstractmethod
    async def list_all(self) -> List[UserData]: ...

    @abstractmethod
    async def ping(self) -> bool: ...

    async def aclose(self) -> None:
        pass

class ClassificationStore(ABC):
    """Latest classification per user id, with history for the activity feed."""
    name = "classification"

    @abstractmethod
    async def get(self, user_id: str) -> Optional[Classification]: ...

    @abstractmethod
    async def upsert(self, classification: Classification) -> Classification: ...

    @abstractmethod
    async def list_all(self) -> List[Classification]: ...

    @abstractmethod
    async def history(self, user_id: str) -> List[Classification]: ...

    @abstractmethod
    async def ping(self) -> bool: ...

    async def aclose(self) -> None:
        pass

class InMemoryLeadStore(LeadStore):
    def __init__(self):
        self._leads: Dict[str, Lead] = {}
        self._lock = asyncio.Lock()

    async def get(self, phone_number: str) -> Optional[Lead]:
        lead = self._leads.get(phone_number)
        return lead.model_copy(deep=True) if lead else None

    async def upsert(self, lead: Lead, previous=UNCHECKED) -> Lead:
        async with self._lock:
            current = self._leads.get(lead.phone_number)
            if not version_matches(current.updated_at if current else None, previous, "updated_at"):
                raise StoreConflict("Lead was modified by another submission", store=self.name)
            self._leads[lead.phone_number] = lead.model_copy(deep=True)
        return lead

    async def list_all(self) -> List[Lead]:
        return [lead.model_copy(deep=True) for lead in self._leads.values()]

    async def ping(self) -> bool:
        return True

class InMemoryUserDataStore(UserDataStore):
    def __init__(self):
        self._records: Dict[str, UserData] = {}
        self._lock = asyncio.Lock()

    async def get(self, phone_number: str) -> Optional[UserData]:
        record = self._records.get(phone_number)
        return record.model_copy(deep=True) if record else None

    async def upsert(self, user_data: UserData, previous=UNCHECKED) -> UserData:
        async with self._lock:
            current = self._records.get(user_data.phone_number)
            if not version_matches(current.last_updated if current else None, previous, "last_updated"):
                raise StoreConflict("User data was modified by another submission", store=self.name)
            self._records[user_data.phone_number] = user_data.model_copy(deep=True)
        return user_data

    async def list_all(self) -> List[UserData]:
        return [record.model_copy(deep=True) for record in self._records.values()]

    async def ping(self) -> bool:
        return True

class InMemoryClassificationStore(ClassificationStore):
    def __init__(self):
        self._latest: Dict[str, Classification] = {}
        self._history: Dict[str, List[Classification]] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> Optional[Classification]:
        classification = self._latest.get(user_id)
        return classification.model_copy(deep=True) if classification else None

    async def upsert(self, classification: Classification) -> Classification:
        async with self._lock:
            history = self._history.setdefault(classification.user_id, [])
            # Re-running the same classification replaces rather than duplicates
            history[:] = [c for c in history if c.classification_id != classification.classification_id]
            history.append(classification.model_copy(deep=True))
            self._latest[classification.user_id] = classification.model_copy(deep=True)
        return classification

    async def list_all(self) -> List[Classification]:
        return [c.model_copy(deep=True) for c in self._latest.values()]

    async def history(self, user_id: str) -> List[Classification]:
        return [c.model_copy(deep=True) for c in reversed(self._history.get(user_id, []))]

    async def ping(self) -> bool:
        return True
