"""
Closed field schema for the intake form.

Every field the form may carry is listed here with the record section it belongs to,
a validator that coerces raw form values, and whether it is required. Completeness and
classification only ever see fields declared in this module.
"""
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from loguru import logger

from graph.errors import InvalidFieldValue, MissingRequiredField

BIO = "bio"
MEDICARE = "medicare"

IDENTITY_FIELDS = ["phoneNumber", "name"]
LEAD_FIELDS = ["phoneNumber", "name", "email", "city"]

PLAN_LEVELS = {
    "a": "Part A",
    "part a": "Part A",
    "b": "Part B",
    "part b": "Part B",
    "c": "Part C",
    "part c": "Part C",
    "d": "Part D",
    "part d": "Part D",
    "advantage": "Advantage",
    "medicare advantage": "Advantage",
    "supplement": "Supplement",
    "medigap": "Supplement",
}

_TRUE = {"true", "yes", "y", "1", "on"}
_FALSE = {"false", "no", "n", "0", "off"}

def _to_int(value: Any, low: int, high: int) -> int:
    if isinstance(value, bool):
        raise ValueError("expected a number")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError("expected a whole number")
    number = int(str(value).strip()) if isinstance(value, str) else int(value)
    if not low <= number <= high:
        raise ValueError(f"must be between {low} and {high}")
    return number

def to_age(value: Any) -> int:
    return _to_int(value, 0, 130)

def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, str)):
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
    raise ValueError("expected yes/no")

def to_text(value: Any) -> str:
    if not isinstance(value, (str, int, float)) or isinstance(value, bool):
        raise ValueError("expected text")
    return str(value).strip()

def to_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, (list, tuple)):
        return [to_text(item) for item in value if str(item).strip()]
    raise ValueError("expected a list")

def to_iso_date(value: Any) -> str:
    text = to_text(value)
    try:
        return date.fromisoformat(text).isoformat()
    except ValueError:
        raise ValueError("expected YYYY-MM-DD")

def to_ssn_last4(value: Any) -> str:
    text = to_text(value)
    if not re.fullmatch(r"\d{4}", text):
        raise ValueError("expected exactly 4 digits")
    return text

def to_medicare_number(value: Any) -> str:
    text = re.sub(r"[\s\-]", "", to_text(value)).upper()
    if not re.fullmatch(r"[0-9A-Z]{8,12}", text):
        raise ValueError("expected 8-12 letters or digits")
    return text

def to_plan_level(value: Any) -> str:
    plan = PLAN_LEVELS.get(to_text(value).lower())
    if not plan:
        raise ValueError(f"unknown plan, expected one of {sorted(set(PLAN_LEVELS.values()))}")
    return plan

def _has_colorblindness(fields: Mapping[str, Any]) -> bool:
    return fields.get("hasColorblindness") is True

@dataclass(frozen=True)
class FieldSpec:
    name: str
    section: str
    validator: Callable[[Any], Any]
    required: bool = False
    required_when: Optional[Callable[[Mapping[str, Any]], bool]] = None

    def is_required(self, fields: Mapping[str, Any]) -> bool:
        if self.required_when is not None:
            return self.required_when(fields)
        return self.required

# Declaration order of the required fields is the canonical missingFields order
FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("age", BIO, to_age, required=True),
    FieldSpec("city", MEDICARE, to_text, required=True),
    FieldSpec("medicareNumber", MEDICARE, to_medicare_number, required=True),
    FieldSpec("planLevel", MEDICARE, to_plan_level, required=True),
    FieldSpec("hasColorblindness", MEDICARE, to_bool, required=True),
    FieldSpec("colorblindType", MEDICARE, to_text, required_when=_has_colorblindness),
    FieldSpec("currentEyewear", MEDICARE, to_text, required=True),
    FieldSpec("dateOfBirth", BIO, to_iso_date),
    FieldSpec("gender", BIO, to_text),
    FieldSpec("medicalHistory", BIO, to_list),
    FieldSpec("currentMedications", BIO, to_list),
    FieldSpec("allergies", BIO, to_list),
    FieldSpec("ssnLast4", MEDICARE, to_ssn_last4),
)

FIELDS_BY_NAME: Dict[str, FieldSpec] = {spec.name: spec for spec in FIELDS}
REQUIRED_FIELDS: Tuple[FieldSpec, ...] = tuple(
    spec for spec in FIELDS if spec.required or spec.required_when is not None
)

def is_present(value: Any) -> bool:
    """False and 0 are answers; None, blanks and empty collections are not."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    return True

def coerce(name: str, value: Any) -> Any:
    """Run the declared validator for one field, raising InvalidFieldValue on bad input."""
    spec = FIELDS_BY_NAME[name]
    try:
        return spec.validator(value)
    except (TypeError, ValueError) as e:
        raise InvalidFieldValue(name, str(e) or "invalid value")

def _identity(name: str, value: Any) -> str:
    try:
        return to_text(value)
    except ValueError as e:
        raise InvalidFieldValue(name, str(e))

@dataclass
class ParsedForm:
    phone_number: str
    name: str
    email: Optional[str]
    city: Optional[str]
    bio: Dict[str, Any]
    medicare: Dict[str, Any]

def parse_form(form_data: Mapping[str, Any]) -> ParsedForm:
    """
    Split a raw form payload into identity, bio and medicare sections.

    Blank values are dropped so they never overwrite stored answers; unknown keys are ignored.
    """
    missing = [field for field in IDENTITY_FIELDS if not is_present(form_data.get(field))]
    if missing:
        raise MissingRequiredField(missing)

    sections: Dict[str, Dict[str, Any]] = {BIO: {}, MEDICARE: {}}
    for key, value in form_data.items():
        spec = FIELDS_BY_NAME.get(key)
        if spec is None:
            if key not in LEAD_FIELDS:
                logger.debug(f"Ignoring unknown form field: {key}")
            continue
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        sections[spec.section][key] = coerce(key, value)

    email = form_data.get("email")
    return ParsedForm(
        phone_number=_identity("phoneNumber", form_data["phoneNumber"]),
        name=_identity("name", form_data["name"]),
        email=_identity("email", email).lower() if is_present(email) else None,
        city=sections[MEDICARE].get("city"),
        bio=sections[BIO],
        medicare=sections[MEDICARE],
    )
