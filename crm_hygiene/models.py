"""Core data models shared by the clean, purge and merge workflows."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

CONFIDENCE_LEVELS = ("LOW", "MEDIUM", "HIGH")
KEEP = "KEEP"
MERGE = "MERGE"
REMOVE = "REMOVE"


class MalformedOutputError(ValueError):
    """Raised when model output does not match the shape its schema promised."""


@dataclass(slots=True)
class CompanyRecord:
    """A company as stored in the CRM: its id plus a flat property map."""

    id: str
    properties: Dict[str, Any] = field(default_factory=dict)
    raw_snapshot: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @classmethod
    def from_wire(cls, raw: Mapping[str, Any]) -> "CompanyRecord":
        record_id = _strip_or_none(raw.get("id"))
        if not record_id:
            raise ValueError("CRM record is missing an id")
        properties = raw.get("properties")
        return cls(
            id=record_id,
            properties=dict(properties) if isinstance(properties, Mapping) else {},
            raw_snapshot=dict(raw),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "properties": dict(self.properties)}


@dataclass(slots=True)
class SearchFilter:
    property_name: str
    operator: str
    value: Optional[str] = None
    values: Optional[List[str]] = None

    def to_wire(self) -> Dict[str, Any]:
        """Serialize for the CRM search API; ``value`` and ``values`` are mutually exclusive there."""
        payload: Dict[str, Any] = {"propertyName": self.property_name, "operator": self.operator}
        if self.value is not None:
            payload["value"] = self.value
        if self.values is not None:
            payload["values"] = list(self.values)
        return payload

    def to_dict(self) -> Dict[str, Any]:
        return {
            "propertyName": self.property_name,
            "operator": self.operator,
            "value": self.value,
            "values": list(self.values) if self.values is not None else None,
        }


@dataclass(slots=True)
class FilterGroup:
    filters: List[SearchFilter] = field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        return {"filters": [item.to_wire() for item in self.filters]}

    def to_dict(self) -> Dict[str, Any]:
        return {"filters": [item.to_dict() for item in self.filters]}


@dataclass(slots=True)
class DuplicateSearchResult:
    filter_groups: List[FilterGroup]
    reasoning: str
    confidence: str

    @classmethod
    def from_model_output(cls, data: Mapping[str, Any]) -> "DuplicateSearchResult":
        raw_groups = data.get("filterGroups")
        if not isinstance(raw_groups, list):
            raise MalformedOutputError("filterGroups must be a list")

        groups: List[FilterGroup] = []
        for raw_group in raw_groups:
            raw_filters = raw_group.get("filters") if isinstance(raw_group, Mapping) else None
            if not isinstance(raw_filters, list):
                raise MalformedOutputError("each filter group needs a filters list")
            filters = []
            for raw_filter in raw_filters:
                if not isinstance(raw_filter, Mapping):
                    raise MalformedOutputError("filter entries must be objects")
                property_name = _strip_or_none(raw_filter.get("propertyName"))
                operator = _strip_or_none(raw_filter.get("operator"))
                if not property_name or not operator:
                    raise MalformedOutputError("filters need propertyName and operator")
                raw_values = raw_filter.get("values")
                filters.append(
                    SearchFilter(
                        property_name=property_name,
                        operator=operator.upper(),
                        value=None if raw_filter.get("value") is None else str(raw_filter["value"]),
                        values=[str(item) for item in raw_values] if isinstance(raw_values, list) else None,
                    )
                )
            groups.append(FilterGroup(filters=filters))

        return cls(
            filter_groups=groups,
            reasoning=str(data.get("reasoning") or ""),
            confidence=_confidence(data.get("confidence")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filterGroups": [group.to_dict() for group in self.filter_groups],
            "reasoning": self.reasoning,
            "confidence": self.confidence,
        }


@dataclass(slots=True)
class MergeDecision:
    """Which record survives.

    KEEP always names the current record as primary; MERGE always names one of
    the other candidates.
    """

    recommended_action: str
    primary_record_id: str
    reasoning: str
    confidence: str

    @classmethod
    def from_model_output(
        cls,
        data: Mapping[str, Any],
        *,
        current_id: str,
        candidate_ids: Iterable[str],
    ) -> "MergeDecision":
        action = (_strip_or_none(data.get("recommendedAction")) or "").upper()
        if action not in (KEEP, MERGE):
            raise MalformedOutputError(f"unknown recommendedAction: {action!r}")

        primary_id = _strip_or_none(data.get("primaryRecordId")) or ""
        reasoning = str(data.get("reasoning") or "")
        confidence = _confidence(data.get("confidence"))

        if action == KEEP or primary_id == current_id:
            return cls(KEEP, current_id, reasoning, confidence)

        if primary_id not in set(candidate_ids):
            raise MalformedOutputError(f"primaryRecordId {primary_id!r} is not one of the duplicates found")
        return cls(MERGE, primary_id, reasoning, confidence)

    @classmethod
    def no_duplicates(cls, current_id: str) -> "MergeDecision":
        return cls(KEEP, current_id, "No duplicate records found in CRM search", "HIGH")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recommendedAction": self.recommended_action,
            "primaryRecordId": self.primary_record_id,
            "reasoning": self.reasoning,
            "confidence": self.confidence,
        }


@dataclass(slots=True)
class FieldMergePlan:
    properties_to_update: Dict[str, str]
    reasoning: str
    confidence: str

    @classmethod
    def from_model_output(cls, data: Mapping[str, Any]) -> "FieldMergePlan":
        raw = data.get("primaryRecordPropertiesToUpdate")
        updates: Dict[str, str] = {}
        if isinstance(raw, list):
            for entry in raw:
                if not isinstance(entry, Mapping):
                    raise MalformedOutputError("property updates must be objects")
                name = _strip_or_none(entry.get("propertyName"))
                if name and entry.get("value") is not None:
                    updates[name] = str(entry["value"])
        elif isinstance(raw, Mapping):
            updates = {str(key): str(value) for key, value in raw.items() if value is not None}
        elif raw is not None:
            raise MalformedOutputError("primaryRecordPropertiesToUpdate has an unexpected type")

        return cls(
            properties_to_update=updates,
            reasoning=str(data.get("reasoning") or ""),
            confidence=_confidence(data.get("confidence")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primaryRecordPropertiesToUpdate": dict(self.properties_to_update),
            "reasoning": self.reasoning,
            "confidence": self.confidence,
        }


@dataclass(slots=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    total_tokens: int = 0

    def cost_usd(self, input_cost_per_mtok: float, output_cost_per_mtok: float) -> float:
        return (self.input_tokens / 1_000_000) * input_cost_per_mtok + (
            self.output_tokens / 1_000_000
        ) * output_cost_per_mtok


@dataclass(slots=True)
class PipelineUsage:
    """Token usage per executed stage, in execution order."""

    input_cost_per_mtok: float
    output_cost_per_mtok: float
    stages: Dict[str, TokenUsage] = field(default_factory=dict)
    models: Dict[str, str] = field(default_factory=dict)

    def add(self, stage: str, model: str, usage: TokenUsage) -> None:
        self.stages[stage] = usage
        self.models[stage] = model

    @property
    def stage_count(self) -> int:
        return len(self.stages)

    def total_cost_usd(self) -> float:
        return sum(
            usage.cost_usd(self.input_cost_per_mtok, self.output_cost_per_mtok)
            for usage in self.stages.values()
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for stage, usage in self.stages.items():
            payload[stage] = {
                "model": self.models.get(stage),
                "inputTokens": usage.input_tokens,
                "outputTokens": usage.output_tokens,
                "reasoningTokens": usage.reasoning_tokens,
                "totalTokens": usage.total_tokens,
                "costUSD": round(usage.cost_usd(self.input_cost_per_mtok, self.output_cost_per_mtok), 6),
            }
        payload["totalCostUSD"] = round(self.total_cost_usd(), 6)
        return payload


def _confidence(value: Any) -> str:
    level = (_strip_or_none(value) or "").upper()
    if level not in CONFIDENCE_LEVELS:
        raise MalformedOutputError(f"unknown confidence level: {value!r}")
    return level


def _strip_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    value_str = str(value).strip()
    return value_str or None
