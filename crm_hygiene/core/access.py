"""API key authentication and credit gating for the public endpoints."""

import logging
from typing import Optional

from crm_hygiene.core import db
from crm_hygiene.core.metering import AccessResult, AutumnGate

logger = logging.getLogger(__name__)


class AuthError(RuntimeError):
    """Raised for a missing or unknown API key, or a missing CRM credential."""


class QuotaError(RuntimeError):
    def __init__(self, access: AccessResult) -> None:
        super().__init__("Insufficient credits. Please purchase more credits to continue using the API.")
        self.remaining = access.remaining or 0
        self.limit = access.limit


def authenticate(api_key: Optional[str]) -> db.ApiKeyRecord:
    if not api_key:
        raise AuthError("API key required")
    record = db.lookup_api_key(api_key)
    if record is None:
        raise AuthError("Invalid API key")
    return record


def require_credits(gate: AutumnGate, user_id: str, feature_id: str) -> AccessResult:
    access = gate.check_access(user_id, feature_id)
    if not access.allowed:
        logger.info("Access denied for %s on %s (remaining=%s)", user_id, feature_id, access.remaining)
        raise QuotaError(access)
    return access
