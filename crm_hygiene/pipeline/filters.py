"""Cleanup for search-filter values produced by the model."""

import re
from typing import List, Optional

from crm_hygiene.models import FilterGroup, SearchFilter

_PROTOCOL_RE = re.compile(r"^https?://", re.IGNORECASE)
_URL_TAIL_RE = re.compile(r"[:/?#&].*$", re.DOTALL)
_TRAILING_CHARS = "{}[],\"' \t\r\n"


def sanitize_filter_value(value: Optional[str]) -> Optional[str]:
    """Reduce a model-produced literal to the bare value the CRM should match.

    ``"https://acme.com:443/about"`` and ``"acme.com}]},{"`` both become
    ``"acme.com"``. None passes through. Applying it twice gives the same
    result as applying it once.
    """
    if value is None:
        return None

    cleaned = _PROTOCOL_RE.sub("", str(value).strip())
    cleaned = _URL_TAIL_RE.sub("", cleaned)
    return cleaned.rstrip(_TRAILING_CHARS).strip()


def sanitize_filter_groups(groups: List[FilterGroup]) -> List[FilterGroup]:
    """Return new filter groups with every literal ``value`` sanitized."""
    return [
        FilterGroup(
            filters=[
                SearchFilter(
                    property_name=item.property_name,
                    operator=item.operator,
                    value=sanitize_filter_value(item.value),
                    values=list(item.values) if item.values is not None else None,
                )
                for item in group.filters
            ]
        )
        for group in groups
    ]
