"""Structured audit events, written as one JSON line per event."""

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger("crm_hygiene.audit")

API_KEY_USED = "api_key.used"
AUTH_FAILED = "auth.failed"
AUTH_INVALID_API_KEY = "auth.invalid_api_key"
CREDITS_CONSUMED = "credits.consumed"
CREDITS_INSUFFICIENT = "credits.insufficient"
CRM_RECORD_UPDATED = "crm.record_updated"
CRM_RECORD_MERGED = "crm.record_merged"
CRM_RECORD_DELETED = "crm.record_deleted"
RATE_LIMIT_EXCEEDED = "rate_limit.exceeded"
VALIDATION_FAILED = "validation.failed"
ERROR_OCCURRED = "error.occurred"


def new_request_id() -> str:
    return f"req_{uuid.uuid4()}"


def log_event(
    event_type: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    api_key_id: Optional[str] = None,
    success: bool = True,
    error_message: Optional[str] = None,
    **metadata: Any,
) -> Dict[str, Any]:
    event: Dict[str, Any] = {
        "id": str(uuid.uuid4()),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "requestId": request_id,
        "eventType": event_type,
        "userId": user_id,
        "apiKeyId": api_key_id,
        "success": success,
        "metadata": metadata or None,
    }
    if error_message:
        event["errorMessage"] = error_message
    logger.info("[AUDIT] %s", json.dumps(event, default=str))
    return event
