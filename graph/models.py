from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

class CamelModel(BaseModel):
    """Base model: snake_case in Python, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class SubmissionStage(str, Enum):
    TOKEN_PENDING = "TOKEN_PENDING"
    TOKEN_VALIDATED = "TOKEN_VALIDATED"
    LEAD_UPSERTED = "LEAD_UPSERTED"
    USERDATA_UPSERTED = "USERDATA_UPSERTED"
    CLASSIFIED = "CLASSIFIED"
    DONE = "DONE"
    FAILED = "FAILED"

class FormToken(CamelModel):
    token: str
    phone_number: str
    issued_at: datetime
    expires_at: datetime
    consumed: bool = False
    consumed_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

class TokenValidation(CamelModel):
    valid: bool
    phone_number: Optional[str] = None
    reason: Optional[str] = None        # error code when invalid

class Lead(CamelModel):
    lead_id: str
    name: str
    phone_number: str
    email: Optional[str] = None
    city: Optional[str] = None
    source: str = "web_form"
    created_at: datetime
    updated_at: datetime

class UserData(CamelModel):
    user_id: str
    phone_number: str
    name: str
    bio_data: Dict[str, Any] = Field(default_factory=dict)
    medicare_data: Dict[str, Any] = Field(default_factory=dict)
    is_complete: bool = False
    missing_fields: List[str] = Field(default_factory=list)
    created_at: datetime
    last_updated: datetime

    def merged_fields(self) -> Dict[str, Any]:
        """Flat view of both sections, the shape rules and completeness read."""
        return {**self.bio_data, **self.medicare_data}

class ClassificationResult(str, Enum):
    ACCEPTABLE = "ACCEPTABLE"
    NOT_ACCEPTABLE = "NOT_ACCEPTABLE"

class FactorImpact(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"

class Factor(CamelModel):
    name: str
    description: str
    impact: FactorImpact
    weight: int

class Classification(CamelModel):
    classification_id: str
    user_id: str
    phone_number: str
    score: int
    result: ClassificationResult
    reason: str
    factors: List[Factor] = Field(default_factory=list)
    created_at: datetime

class Completeness(CamelModel):
    is_complete: bool
    missing_fields: List[str]

class SubmissionResult(CamelModel):
    lead: Lead
    user_data: UserData
    classification: Classification

class ExistingCheck(CamelModel):
    found: bool
    partial: bool = False
    name: Optional[str] = None
    is_complete: Optional[bool] = None
    message: str

# Request bodies

class TokenRequest(CamelModel):
    phone_number: str

class TokenIssued(CamelModel):
    token: str
    phone_number: str
    expires_at: datetime
    form_url: str

class FormSubmission(CamelModel):
    token: str
    form_data: Dict[str, Any]
