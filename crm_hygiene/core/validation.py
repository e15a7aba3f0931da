"""Request validation and rule sanitizing for the public endpoints."""

import logging
import re
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

MAX_COMPANY_PROPERTIES = 50
MAX_STRING_LENGTH = 10000
MAX_RULE_LENGTH = 2000
MAX_PROPERTY_RULES = 20

_RULE_STRIP_RE = re.compile(r"[{}\[\]<>\\]")
_SAFE_ERROR_MARKERS = ("Rate limit", "Invalid", "not found")
GENERIC_ERROR_MESSAGE = (
    "An error occurred while processing your request. Please contact support if this persists."
)


class ValidationError(ValueError):
    """Raised when a request body or header is rejected before any work is done."""


def validate_content_type(content_type: Optional[str]) -> None:
    if not content_type:
        raise ValidationError("Content-Type header is required")
    if "application/json" not in content_type:
        raise ValidationError("Content-Type must be application/json")


def validate_company(company: Any) -> Dict[str, Any]:
    """Check the caller's company object is a small flat map of scalars."""
    if not isinstance(company, dict):
        raise ValidationError("Company object is required")

    count = len(company)
    if count == 0:
        raise ValidationError("Company object must contain at least one property")
    if count > MAX_COMPANY_PROPERTIES:
        raise ValidationError(
            f"Too many properties. Maximum {MAX_COMPANY_PROPERTIES} allowed, received {count}"
        )

    for key, value in company.items():
        if isinstance(value, str) and len(value) > MAX_STRING_LENGTH:
            raise ValidationError(
                f"Property '{key}' exceeds maximum length of {MAX_STRING_LENGTH} characters"
            )
        if isinstance(value, (dict, list, tuple)):
            raise ValidationError(
                f"Property '{key}' contains nested object or array. Only primitive values are supported."
            )
    return company


def validate_record_id(record_id: Any) -> str:
    if not isinstance(record_id, str) or not record_id.strip():
        raise ValidationError("Invalid recordId: recordId must be a non-empty string")
    return record_id.strip()


def sanitize_rule(rule: Any) -> Optional[str]:
    """Trim, cap and strip structural characters from caller rule text.

    Returns None for anything that is not a non-blank string.
    """
    if not isinstance(rule, str):
        return None
    trimmed = rule.strip()
    if not trimmed:
        return None
    cleaned = _RULE_STRIP_RE.sub("", trimmed[:MAX_RULE_LENGTH]).strip()
    return cleaned or None


def sanitize_property_rules(rules: Any) -> Optional[Dict[str, str]]:
    if not isinstance(rules, Mapping) or not rules:
        return None
    if len(rules) > MAX_PROPERTY_RULES:
        logger.info("Dropping %d property rules (limit %d)", len(rules), MAX_PROPERTY_RULES)
        return None

    sanitized: Dict[str, str] = {}
    for key, value in rules.items():
        cleaned = sanitize_rule(value)
        if cleaned:
            sanitized[str(key)] = cleaned
    return sanitized or None


def public_error_message(exc: BaseException) -> str:
    """Text safe to hand back to a caller; everything else stays in the logs."""
    message = str(exc)
    if any(marker in message for marker in _SAFE_ERROR_MARKERS):
        return message
    return GENERIC_ERROR_MESSAGE
