"""Single-call REMOVE/KEEP classification with optional delete."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from crm_hygiene.core.validation import sanitize_rule, validate_company
from crm_hygiene.models import CONFIDENCE_LEVELS, KEEP, REMOVE, MalformedOutputError, PipelineUsage
from crm_hygiene.pipeline import schemas
from crm_hygiene.vendors.crm import RecordStore
from crm_hygiene.vendors.openai_structured import InferenceFailure, StructuredInferenceClient

logger = logging.getLogger(__name__)

STAGE_PURGE = "purge"


@dataclass(slots=True)
class PurgeRequest:
    company: Dict[str, Any]
    purge_rules: Optional[str] = None
    delete_record: bool = False
    record_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PurgeRequest":
        record_id = payload.get("recordId")
        return cls(
            company=validate_company(payload.get("company")),
            purge_rules=sanitize_rule(payload.get("purgeRules")),
            delete_record=payload.get("deleteRecord") is True,
            record_id=record_id.strip() if isinstance(record_id, str) and record_id.strip() else None,
        )

    @property
    def wants_delete(self) -> bool:
        return self.delete_record and bool(self.record_id)


@dataclass(slots=True)
class PurgeAnalysis:
    recommended_action: str
    reasoning: str
    confidence: str

    @classmethod
    def from_model_output(cls, data: Mapping[str, Any]) -> "PurgeAnalysis":
        action = str(data.get("recommendedAction") or "").upper()
        confidence = str(data.get("confidence") or "").upper()
        if action not in (REMOVE, KEEP):
            raise MalformedOutputError(f"unknown recommendedAction: {action!r}")
        if confidence not in CONFIDENCE_LEVELS:
            raise MalformedOutputError(f"unknown confidence level: {confidence!r}")
        return cls(action, str(data.get("reasoning") or ""), confidence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recommendedAction": self.recommended_action,
            "reasoning": self.reasoning,
            "confidence": self.confidence,
        }


@dataclass(slots=True)
class PurgeOutcome:
    request: PurgeRequest
    analysis: PurgeAnalysis
    usage: PipelineUsage
    json_schema: Dict[str, Any]
    record_deleted: bool = False

    credit_cost = 1

    def to_response(self) -> Dict[str, Any]:
        return {
            "company": self.request.company,
            "recordId": self.request.record_id,
            "analysis": self.analysis.to_dict(),
            "purgeRules": self.request.purge_rules,
            "deleteRecord": self.request.delete_record,
            "recordDeleted": self.record_deleted,
            "creditCost": self.credit_cost,
            "aiUsage": self.usage.to_dict(),
            "jsonSchemas": {STAGE_PURGE: self.json_schema},
        }


def classify(
    request: PurgeRequest,
    inference: StructuredInferenceClient,
    *,
    input_cost_per_mtok: float = 0.30,
    output_cost_per_mtok: float = 1.20,
) -> PurgeOutcome:
    schema = schemas.build_purge_schema(request.purge_rules)
    result = inference.complete(request.company, schema, name="purge_analysis")
    try:
        analysis = PurgeAnalysis.from_model_output(result.data)
    except MalformedOutputError as exc:
        raise InferenceFailure(f"Failed to generate purge analysis: {exc}") from exc

    usage = PipelineUsage(input_cost_per_mtok, output_cost_per_mtok)
    usage.add(STAGE_PURGE, result.model, result.usage)
    return PurgeOutcome(request=request, analysis=analysis, usage=usage, json_schema=schema)


def apply_purge(outcome: PurgeOutcome, store: RecordStore) -> PurgeOutcome:
    """Delete the record only when the caller asked for it and the verdict is REMOVE."""
    request = outcome.request
    if not request.wants_delete or outcome.analysis.recommended_action != REMOVE:
        return outcome
    store.delete(request.record_id)
    outcome.record_deleted = True
    logger.info("Purged record %s (%s confidence)", request.record_id, outcome.analysis.confidence)
    return outcome
