"""CRM credential detection and client selection."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Protocol, Sequence

from crm_hygiene.models import CompanyRecord, FilterGroup

logger = logging.getLogger(__name__)

# Identity, location and history fields every later stage relies on.
COMPANY_PROPERTIES = (
    "name",
    "domain",
    "website",
    "phone",
    "city",
    "state",
    "zip",
    "country",
    "address",
    "linkedin",
    "createdate",
    "hs_lastmodifieddate",
)


class StoreError(RuntimeError):
    """Raised when the CRM rejects a request."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class StoreTimeout(StoreError):
    """Raised when a CRM call exceeds its timeout."""


class RecordNotFound(StoreError):
    """Raised when a CRM record id does not exist."""


class UnsupportedProviderError(ValueError):
    """Raised for CRM providers we detect but do not integrate with yet."""


class CrmProvider(enum.Enum):
    HUBSPOT = "hubspot"
    ATTIO = "attio"
    ZOHO = "zoho"
    SALESFORCE = "salesforce"


# Checked in this order; the first header present wins.
PROVIDER_HEADERS = (
    (CrmProvider.HUBSPOT, "X-HubSpot-API-Key"),
    (CrmProvider.ATTIO, "X-Attio-API-Key"),
    (CrmProvider.ZOHO, "X-Zoho-API-Key"),
    (CrmProvider.SALESFORCE, "X-Salesforce-API-Key"),
)


@dataclass(frozen=True)
class RecordStoreCredential:
    provider: CrmProvider
    api_key: str

    def __repr__(self) -> str:
        return f"RecordStoreCredential(provider={self.provider.value!r}, api_key='***')"


class RecordStore(Protocol):
    def search(
        self, filter_groups: Sequence[FilterGroup], properties: Sequence[str] = ..., limit: int = ...
    ) -> List[CompanyRecord]: ...

    def fetch(self, record_id: str, properties: Sequence[str] = ...) -> CompanyRecord: ...

    def exists(self, record_id: str) -> bool: ...

    def update(self, record_id: str, properties: Mapping[str, Any]) -> None: ...

    def merge(self, primary_id: str, merged_id: str) -> None: ...

    def delete(self, record_id: str) -> None: ...


def detect_credential(headers: Mapping[str, str]) -> Optional[RecordStoreCredential]:
    """Pick the CRM credential out of request headers, if any is present."""
    for provider, header in PROVIDER_HEADERS:
        value = headers.get(header)
        if value and value.strip():
            return RecordStoreCredential(provider=provider, api_key=value.strip())
    return None


def create_record_store(credential: RecordStoreCredential, **kwargs: Any) -> RecordStore:
    if credential.provider is CrmProvider.HUBSPOT:
        from crm_hygiene.vendors.hubspot import HubSpotClient

        return HubSpotClient.from_settings(credential.api_key, **kwargs)

    logger.info("Rejecting unsupported CRM provider %s", credential.provider.value)
    raise UnsupportedProviderError(f"{credential.provider.value.title()} integration is not yet supported")
