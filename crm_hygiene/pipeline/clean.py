"""Single-call field cleaning with optional CRM write-back."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from crm_hygiene.core.validation import sanitize_property_rules, sanitize_rule, validate_company
from crm_hygiene.models import CONFIDENCE_LEVELS, MalformedOutputError, PipelineUsage
from crm_hygiene.pipeline import schemas
from crm_hygiene.vendors.crm import RecordStore, StoreError
from crm_hygiene.vendors.openai_structured import InferenceFailure, StructuredInferenceClient

logger = logging.getLogger(__name__)

STAGE_CLEAN = "clean"


@dataclass(slots=True)
class CleanRequest:
    company: Dict[str, Any]
    clean_rules: Optional[str] = None
    clean_property_rules: Optional[Dict[str, str]] = None
    update_record: bool = False
    record_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CleanRequest":
        record_id = payload.get("recordId")
        return cls(
            company=validate_company(payload.get("company")),
            clean_rules=sanitize_rule(payload.get("cleanRules")),
            clean_property_rules=sanitize_property_rules(payload.get("cleanPropertyRules")),
            update_record=payload.get("updateRecord") is True,
            record_id=record_id.strip() if isinstance(record_id, str) and record_id.strip() else None,
        )

    @property
    def wants_write(self) -> bool:
        return self.update_record and bool(self.record_id)


@dataclass(slots=True)
class CleanedField:
    value: Any
    reasoning: str
    confidence: str
    action: str


@dataclass(slots=True)
class CleanOutcome:
    request: CleanRequest
    fields: Dict[str, CleanedField]
    usage: PipelineUsage
    json_schema: Dict[str, Any]
    crm_update: Optional[Dict[str, Any]] = None
    updated_properties: Dict[str, Any] = field(default_factory=dict)

    credit_cost = 1

    def to_response(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "company": self.request.company,
            "cleanedCompany": {name: item.value for name, item in self.fields.items()},
            "reasoning": {name: item.reasoning for name, item in self.fields.items()},
            "confidence": {name: item.confidence for name, item in self.fields.items()},
            "actions": {name: item.action for name, item in self.fields.items()},
            "cleanRules": self.request.clean_rules,
            "cleanPropertyRules": self.request.clean_property_rules,
            "creditCost": self.credit_cost,
            "recordUpdated": bool(self.crm_update and self.crm_update.get("success") and self.updated_properties),
            "aiUsage": self.usage.to_dict(),
            "jsonSchemas": {STAGE_CLEAN: self.json_schema},
        }
        if self.crm_update is not None:
            payload["crmUpdate"] = self.crm_update
            payload["updatedProperties"] = dict(self.updated_properties)
        return payload


def _decode_fields(data: Mapping[str, Any], field_names) -> Dict[str, CleanedField]:
    cleaned = data.get("cleanedCompany")
    if not isinstance(cleaned, Mapping):
        raise MalformedOutputError("cleanedCompany must be an object")

    fields: Dict[str, CleanedField] = {}
    for name in field_names:
        entry = cleaned.get(name)
        if not isinstance(entry, Mapping):
            raise MalformedOutputError(f"cleanedCompany is missing {name!r}")
        confidence = str(entry.get("confidence") or "").upper()
        action = str(entry.get("action") or "").upper()
        if confidence not in CONFIDENCE_LEVELS:
            raise MalformedOutputError(f"unknown confidence for {name!r}: {confidence!r}")
        if action not in schemas.CLEAN_ACTIONS:
            raise MalformedOutputError(f"unknown action for {name!r}: {action!r}")
        fields[name] = CleanedField(
            value=entry.get("value"),
            reasoning=str(entry.get("reasoning") or ""),
            confidence=confidence,
            action=action,
        )
    return fields


def changed_properties(
    original: Mapping[str, Any],
    fields: Mapping[str, CleanedField],
    stored_properties: Mapping[str, Any],
) -> Dict[str, Any]:
    """Cleaned values that differ from the input and name a property the stored record has."""
    changes: Dict[str, Any] = {}
    for name, item in fields.items():
        if name not in stored_properties:
            continue
        if item.value == original.get(name):
            continue
        changes[name] = item.value if item.value is not None else ""
    return changes


def run_clean(
    request: CleanRequest,
    inference: StructuredInferenceClient,
    store: Optional[RecordStore] = None,
    *,
    input_cost_per_mtok: float = 0.30,
    output_cost_per_mtok: float = 1.20,
) -> CleanOutcome:
    field_names = list(request.company.keys())
    schema = schemas.build_clean_schema(field_names, request.clean_rules, request.clean_property_rules)
    result = inference.complete(request.company, schema, name="company_data_cleaning")
    try:
        fields = _decode_fields(result.data, field_names)
    except MalformedOutputError as exc:
        raise InferenceFailure(f"Failed to process company data: {exc}") from exc

    usage = PipelineUsage(input_cost_per_mtok, output_cost_per_mtok)
    usage.add(STAGE_CLEAN, result.model, result.usage)
    outcome = CleanOutcome(request=request, fields=fields, usage=usage, json_schema=schema)

    if not request.wants_write:
        return outcome
    if store is None:
        outcome.crm_update = {
            "success": False,
            "error": "No CRM credentials provided in headers (e.g., X-HubSpot-API-Key)",
        }
        return outcome

    # A failed write is reported in the response, not raised. HubSpot only
    # returns the properties it is asked for, so ask for the caller's fields.
    try:
        stored = store.fetch(request.record_id, properties=field_names)
        changes = changed_properties(request.company, fields, stored.properties)
        if changes:
            store.update(request.record_id, changes)
        outcome.updated_properties = changes
        outcome.crm_update = {"success": True}
    except StoreError as exc:
        logger.error("Clean write-back failed for record %s: %s", request.record_id, exc)
        outcome.crm_update = {"success": False, "error": "CRM update failed"}
    return outcome
