"""
Request Validation for the MVR Exchange

Schema-driven field validation for ingestion, batch ingestion and
retrieval requests. Each field is checked in a fixed order and only the
first failing rule is reported for it:

1. required and null
2. required and blank (strings, unless empty values are allowed)
3. optional and null (no further checks)
4. the literal 'Other' (case-insensitive), unless allowed
5. type
6. custom validator

Errors keep schema declaration order. Callers join the messages with "; ".
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from database.models import PermissiblePurpose

logger = logging.getLogger(__name__)


# ============================================
# EXCEPTIONS
# ============================================

@dataclass
class FieldError:
    """A single failed field rule."""
    field: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "message": self.message}


class InputValidationError(ValueError):
    """
    Raised when a request fails schema validation.

    Attributes:
        message: All field messages joined with "; "
        errors: The individual field errors, in schema order
        field: First offending field
        code: Machine-readable error code
        status_code: HTTP status to surface
    """

    def __init__(
        self,
        errors: List[FieldError],
        code: str = "VALIDATION_ERROR",
        status_code: int = 400
    ):
        self.errors = list(errors)
        self.message = "; ".join(error.message for error in self.errors)
        self.field = self.errors[0].field if self.errors else "unknown"
        self.code = code
        self.status_code = status_code
        super().__init__(self.message)


# ============================================
# SCHEMA DEFINITION
# ============================================

# Custom validators return None when valid, otherwise a message
Validator = Callable[[Any], Optional[str]]


@dataclass(frozen=True)
class FieldRule:
    """Validation rule for one request field."""
    required: bool = False
    allow_empty: bool = False
    allow_other: bool = True
    type: Optional[str] = None
    validator: Optional[Validator] = None


Schema = Dict[str, FieldRule]


def _type_name(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    if value is None:
        return "null"
    return type(value).__name__


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ============================================
# CUSTOM VALIDATORS
# ============================================

def permissible_purpose_validator(allowed: Iterable[str]) -> Validator:
    """Build a validator accepting only the given purposes."""
    allowed = [str(getattr(purpose, "value", purpose)) for purpose in allowed]
    message = f"permissible_purpose must be one of: {', '.join(allowed)}"

    def check(value: Any) -> Optional[str]:
        if value not in allowed:
            return message
        return None

    return check


def consent_required(value: Any) -> Optional[str]:
    if value is not True:
        return "Consent is required and must be true"
    return None


def non_negative_number(value: Any) -> Optional[str]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return "Value must be a non-negative number"
    if math.isnan(number) or number < 0:
        return "Value must be a non-negative number"
    return None


def integer(value: Any) -> Optional[str]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return "Value must be an integer"
    if isinstance(value, float) and not value.is_integer():
        return "Value must be an integer"
    return None


def non_negative_integer(value: Any) -> Optional[str]:
    return integer(value) or non_negative_number(value)


def non_empty_array(value: Any) -> Optional[str]:
    if not isinstance(value, list) or len(value) == 0:
        return "Value must be a non-empty array"
    return None


def drivers_license_number(value: Any) -> Optional[str]:
    if not isinstance(value, str) or value.strip() == "":
        return "drivers_license_number must be a non-empty string"
    return None


def array_of_objects(name: str) -> Validator:
    """Build a validator for arrays whose items must all be objects."""
    def check(value: Any) -> Optional[str]:
        for index, item in enumerate(value):
            if not isinstance(item, dict):
                return f"{name}[{index}] must be of type object, received {_type_name(item)}"
        return None

    return check


def redisclosure_authorization(value: Any) -> Optional[str]:
    if value is not True:
        return "redisclosure_authorization is required and must be true"
    return None


# ============================================
# VALIDATION
# ============================================

def validate_field(name: str, value: Any, rule: FieldRule) -> Optional[str]:
    """
    Validate a single value against its rule.

    Args:
        name: Field name used in messages
        value: Value from the request (None when absent)
        rule: The field's rule

    Returns:
        The first failing rule's message, or None when valid
    """
    if rule.required and value is None:
        return f"{name} is required and cannot be null or undefined"

    if rule.required and not rule.allow_empty and isinstance(value, str) and value.strip() == "":
        return f"{name} is required and cannot be empty"

    if value is None:
        return None

    if not rule.allow_other and isinstance(value, str) and value.lower() == "other":
        return f"{name} cannot be 'Other'. Please provide a valid value"

    if rule.type is not None:
        actual = _type_name(value)
        valid = _is_number(value) if rule.type == "number" else actual == rule.type
        if not valid:
            return f"{name} must be of type {rule.type}, received {actual}"

    if rule.validator is not None:
        message = rule.validator(value)
        if message is not None:
            return message or f"{name} failed custom validation"

    return None


def validate_schema(body: Dict[str, Any], schema: Schema) -> List[FieldError]:
    """
    Validate a request body against a schema.

    Args:
        body: Decoded request body
        schema: Ordered mapping of field name to rule

    Returns:
        Field errors in schema declaration order (empty when valid)
    """
    errors = []
    for name, rule in schema.items():
        message = validate_field(name, body.get(name), rule)
        if message is not None:
            errors.append(FieldError(field=name, message=message))
    return errors


# ============================================
# SCHEMAS
# ============================================

ALL_PURPOSES = [purpose.value for purpose in PermissiblePurpose]

_REQUIRED_TEXT = FieldRule(required=True, allow_empty=False, allow_other=False, type="string")


def ingestion_schema(allowed_purposes: Optional[Iterable[str]] = None) -> Schema:
    """Top-level fields of a single ingestion request."""
    return {
        "company_id": _REQUIRED_TEXT,
        "permissible_purpose": FieldRule(
            required=True,
            allow_other=False,
            type="string",
            validator=permissible_purpose_validator(allowed_purposes or ALL_PURPOSES)
        ),
        "price_paid": FieldRule(required=True, type="number", validator=non_negative_number),
        "redisclosure_authorization": FieldRule(
            required=True,
            type="boolean",
            validator=redisclosure_authorization
        ),
        "storage_limitations": FieldRule(required=False, type="number", validator=non_negative_number),
        "mvr": FieldRule(required=True, type="object"),
    }


MVR_PAYLOAD_SCHEMA: Schema = {
    "drivers_license_number": FieldRule(
        required=True,
        allow_empty=False,
        allow_other=False,
        type="string",
        validator=drivers_license_number
    ),
    "full_legal_name": _REQUIRED_TEXT,
    "birthdate": _REQUIRED_TEXT,
    "weight": _REQUIRED_TEXT,
    "sex": _REQUIRED_TEXT,
    "height": _REQUIRED_TEXT,
    "hair_color": _REQUIRED_TEXT,
    "eye_color": _REQUIRED_TEXT,
    "issued_state_code": _REQUIRED_TEXT,
    "state_code": _REQUIRED_TEXT,
    "violations": FieldRule(type="array", validator=array_of_objects("violations")),
    "withdrawals": FieldRule(type="array", validator=array_of_objects("withdrawals")),
    "accidents": FieldRule(type="array", validator=array_of_objects("accidents")),
    "crimes": FieldRule(type="array", validator=array_of_objects("crimes")),
    "transaction": FieldRule(type="object"),
}


RETRIEVAL_SCHEMA: Schema = {
    "drivers_license_number": FieldRule(
        required=True,
        allow_empty=False,
        allow_other=False,
        type="string",
        validator=drivers_license_number
    ),
    "company_id": _REQUIRED_TEXT,
    "permissible_purpose": FieldRule(
        required=True,
        allow_other=False,
        type="string",
        validator=permissible_purpose_validator(ALL_PURPOSES)
    ),
    "days": FieldRule(required=True, type="number", validator=non_negative_integer),
    "consent": FieldRule(required=True, type="boolean", validator=consent_required),
}


def batch_schema(allowed_purposes: Optional[Iterable[str]] = None) -> Schema:
    """Top-level fields of a batch ingestion request."""
    return {
        "company_id": _REQUIRED_TEXT,
        "permissible_purpose": FieldRule(
            required=True,
            allow_other=False,
            type="string",
            validator=permissible_purpose_validator(allowed_purposes or ALL_PURPOSES)
        ),
        "batch_mvrs": FieldRule(required=True, type="array", validator=non_empty_array),
    }


# ============================================
# REQUEST VALIDATORS
# ============================================

def _ensure_object(body: Any) -> Dict[str, Any]:
    if not isinstance(body, dict):
        raise InputValidationError([
            FieldError("body", f"body must be of type object, received {_type_name(body)}")
        ])
    return body


def validate_ingestion_request(body: Any, allowed_purposes: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """
    Validate a single ingestion request.

    Top-level errors come first, followed by errors in the nested MVR payload.

    Raises:
        InputValidationError: If any field fails validation
    """
    body = _ensure_object(body)
    errors = validate_schema(body, ingestion_schema(allowed_purposes))
    mvr = body.get("mvr")
    if isinstance(mvr, dict):
        errors.extend(validate_schema(mvr, MVR_PAYLOAD_SCHEMA))
    if errors:
        raise InputValidationError(errors)
    return body


def validate_retrieval_request(body: Any) -> Dict[str, Any]:
    """
    Validate a retrieval request.

    Raises:
        InputValidationError: If any field fails validation, including missing consent
    """
    body = _ensure_object(body)
    errors = validate_schema(body, RETRIEVAL_SCHEMA)
    if errors:
        raise InputValidationError(errors)
    return body


def validate_batch_request(
    body: Any,
    allowed_purposes: Optional[Iterable[str]] = None,
    max_batch_size: Optional[int] = None
) -> Dict[str, Any]:
    """
    Validate a batch ingestion request and each of its payloads.

    Payload errors are prefixed with the payload's index, e.g.
    ``Validation failed for MVR at index 1: drivers_license_number is required
    and cannot be null or undefined``.

    Raises:
        InputValidationError: If the request or any payload fails validation
    """
    body = _ensure_object(body)
    errors = validate_schema(body, batch_schema(allowed_purposes))
    if errors:
        raise InputValidationError(errors)

    if max_batch_size is not None and len(body["batch_mvrs"]) > max_batch_size:
        raise InputValidationError([FieldError(
            "batch_mvrs",
            f"batch_mvrs cannot contain more than {max_batch_size} records"
        )])

    for index, payload in enumerate(body["batch_mvrs"]):
        if not isinstance(payload, dict):
            item_errors = [FieldError(
                "mvr",
                f"mvr must be of type object, received {_type_name(payload)}"
            )]
        else:
            item_errors = validate_schema(payload, MVR_PAYLOAD_SCHEMA)
        for error in item_errors:
            errors.append(FieldError(
                field=f"batch_mvrs[{index}].{error.field}",
                message=f"Validation failed for MVR at index {index}: {error.message}"
            ))

    if errors:
        raise InputValidationError(errors)
    return body
