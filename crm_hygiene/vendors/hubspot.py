"""Client utilities for the HubSpot companies API."""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional, Sequence

import requests

from crm_hygiene.core.config import get_settings
from crm_hygiene.models import CompanyRecord, FilterGroup
from crm_hygiene.vendors.crm import COMPANY_PROPERTIES, RecordNotFound, StoreError, StoreTimeout

logger = logging.getLogger(__name__)

_BASE_URL = "https://api.hubapi.com"
_COMPANIES_PATH = "/crm/v3/objects/companies"
DEFAULT_TIMEOUT = 15
SEARCH_LIMIT = 100


class HubSpotClient:
    """Search, fetch, update, merge and delete HubSpot company records.

    Every call carries its own timeout. A timeout raises ``StoreTimeout``;
    any other non-2xx answer raises ``StoreError`` with the upstream status
    and body kept for the logs.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = _BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not api_key:
            raise ValueError("HubSpot API key is required")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self._headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    @classmethod
    def from_settings(cls, api_key: str, **kwargs: Any) -> "HubSpotClient":
        settings = get_settings()
        kwargs.setdefault("base_url", settings.hubspot_base_url)
        kwargs.setdefault("timeout", settings.crm_timeout_seconds)
        return cls(api_key, **kwargs)

    def _request(self, method: str, path: str, *, operation: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, headers=self._headers, timeout=self.timeout, **kwargs)
        except requests.Timeout as exc:
            logger.error("HubSpot %s timed out after %ss", operation, self.timeout)
            raise StoreTimeout(f"CRM {operation} timed out") from exc
        except requests.RequestException as exc:
            logger.error("HubSpot %s failed: %s", operation, exc)
            raise StoreError(f"CRM {operation} failed") from exc
        return response

    def _raise_for_status(self, response: requests.Response, operation: str) -> None:
        if 200 <= response.status_code < 300:
            return
        detail = (response.text or "")[:500]
        logger.error("HubSpot %s failed: status=%s body=%s", operation, response.status_code, detail)
        raise StoreError(
            f"CRM {operation} failed with status {response.status_code}",
            status_code=response.status_code,
            detail=detail,
        )

    def _json_body(self, response: requests.Response, operation: str) -> Mapping[str, Any]:
        """Decode a 2xx body; HTML error pages and non-object payloads raise ``StoreError``."""
        try:
            body = response.json()
        except ValueError as exc:
            logger.error("HubSpot %s returned a non-JSON body: %s", operation, (response.text or "")[:200])
            raise StoreError(f"CRM {operation} returned an unreadable body", status_code=response.status_code) from exc
        if not isinstance(body, Mapping):
            raise StoreError(f"CRM {operation} returned an unreadable body", status_code=response.status_code)
        return body

    def search(
        self,
        filter_groups: Sequence[FilterGroup],
        properties: Sequence[str] = COMPANY_PROPERTIES,
        limit: int = SEARCH_LIMIT,
    ) -> List[CompanyRecord]:
        """POST /crm/v3/objects/companies/search. Groups are OR-ed, filters inside a group AND-ed."""
        body = {
            "filterGroups": [group.to_wire() for group in filter_groups],
            "properties": list(properties),
            "limit": limit,
        }
        response = self._request("POST", f"{_COMPANIES_PATH}/search", operation="search", json=body)
        self._raise_for_status(response, "search")

        records: List[CompanyRecord] = []
        for raw in self._json_body(response, "search").get("results") or []:
            if not isinstance(raw, Mapping) or not raw.get("id"):
                logger.debug("Skipping search result without id: %s", raw)
                continue
            try:
                records.append(CompanyRecord.from_wire(raw))
            except ValueError:
                logger.debug("Skipping search result with blank id: %s", raw)
        logger.info("HubSpot search returned %d records", len(records))
        return records

    def fetch(self, record_id: str, properties: Sequence[str] = COMPANY_PROPERTIES) -> CompanyRecord:
        response = self._request(
            "GET",
            f"{_COMPANIES_PATH}/{record_id}",
            operation="fetch",
            params={"properties": ",".join(properties)},
        )
        if response.status_code == 404:
            raise RecordNotFound(f"Record {record_id} not found", status_code=404)
        self._raise_for_status(response, "fetch")
        try:
            return CompanyRecord.from_wire(self._json_body(response, "fetch"))
        except ValueError as exc:
            raise StoreError("CRM fetch returned an unreadable body", status_code=response.status_code) from exc

    def exists(self, record_id: str) -> bool:
        """True when the record can be read; a 404 is reported as False, never raised."""
        response = self._request("GET", f"{_COMPANIES_PATH}/{record_id}", operation="exists")
        if response.status_code == 404:
            return False
        self._raise_for_status(response, "exists")
        return True

    def update(self, record_id: str, properties: Mapping[str, Any]) -> None:
        response = self._request(
            "PATCH",
            f"{_COMPANIES_PATH}/{record_id}",
            operation="update",
            json={"properties": dict(properties)},
        )
        self._raise_for_status(response, "update")
        logger.info("Updated HubSpot company %s (%d properties)", record_id, len(properties))

    def merge(self, primary_id: str, merged_id: str) -> None:
        """Fold ``merged_id`` into ``primary_id``; the primary survives."""
        response = self._request(
            "POST",
            f"{_COMPANIES_PATH}/merge",
            operation="merge",
            json={"primaryObjectId": primary_id, "objectIdToMerge": merged_id},
        )
        self._raise_for_status(response, "merge")
        logger.info("Merged HubSpot company %s into %s", merged_id, primary_id)

    def delete(self, record_id: str) -> None:
        response = self._request("DELETE", f"{_COMPANIES_PATH}/{record_id}", operation="delete")
        self._raise_for_status(response, "delete")
        logger.info("Deleted HubSpot company %s", record_id)
