"""Credit checks and usage tracking against the Autumn billing API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional

import requests

from crm_hygiene.core.config import get_settings

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10


class MeteringError(RuntimeError):
    """Raised when usage could not be recorded."""


@dataclass(frozen=True)
class AccessResult:
    allowed: bool
    remaining: Optional[float] = None
    limit: Optional[float] = None


class AutumnGate:
    def __init__(self, secret_key: str, base_url: str, session: Optional[requests.Session] = None) -> None:
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

    def _post(self, path: str, body: Dict[str, Any]) -> requests.Response:
        return self.session.post(
            f"{self.base_url}{path}",
            json=body,
            headers={"Authorization": f"Bearer {self.secret_key}"},
            timeout=REQUEST_TIMEOUT,
        )

    def check_access(self, user_id: str, feature_id: str) -> AccessResult:
        """Ask whether the user may spend ``feature_id``; errors count as a denial."""
        if not self.secret_key:
            logger.error("AUTUMN_SECRET_KEY missing; denying access for %s", user_id)
            return AccessResult(allowed=False)
        try:
            response = self._post("/check", {"customer_id": user_id, "feature_id": feature_id})
            response.raise_for_status()
            data = response.json() or {}
        except (requests.RequestException, ValueError) as exc:
            logger.error("Autumn check failed for %s: %s", user_id, exc)
            return AccessResult(allowed=False)

        return AccessResult(
            allowed=bool(data.get("allowed", False)),
            remaining=data.get("balance"),
            limit=data.get("included_usage"),
        )

    def track_usage(self, user_id: str, feature_id: str, amount: int) -> None:
        if amount <= 0:
            return
        try:
            response = self._post("/track", {"customer_id": user_id, "feature_id": feature_id, "value": amount})
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Autumn track failed for %s (%d units): %s", user_id, amount, exc)
            raise MeteringError("Failed to track credit usage") from exc
        logger.info("Tracked %d %s for %s", amount, feature_id, user_id)


@lru_cache(maxsize=1)
def get_gate() -> AutumnGate:
    settings = get_settings()
    return AutumnGate(settings.autumn_secret_key, settings.autumn_base_url)
