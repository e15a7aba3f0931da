"""Duplicate detection and merge pipeline.

One run walks a fixed sequence of states::

    VALIDATE -> BUILD_FILTERS -> SEARCH -> DECIDE -> FETCH_PRIMARY -> PLAN_FIELD_MERGE -> APPLY -> DONE

with early exits to DONE after SEARCH (no other duplicates) and after DECIDE
(current record stays primary). Each state has one step method that returns
the next state. The credit cost of a run is the number of model stages that
completed, so an early exit is billed 1 or 2 credits and a full run 3.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from crm_hygiene.core.validation import (
    sanitize_property_rules,
    sanitize_rule,
    validate_company,
    validate_record_id,
)
from crm_hygiene.models import (
    KEEP,
    CompanyRecord,
    DuplicateSearchResult,
    FieldMergePlan,
    FilterGroup,
    MalformedOutputError,
    MergeDecision,
    PipelineUsage,
)
from crm_hygiene.pipeline import schemas
from crm_hygiene.pipeline.filters import sanitize_filter_groups
from crm_hygiene.vendors.crm import RecordStore, StoreError
from crm_hygiene.vendors.openai_structured import InferenceFailure, StructuredInferenceClient

logger = logging.getLogger(__name__)

STAGE_DUPLICATE_SEARCH = "step1DuplicateSearch"
STAGE_MERGE_DECISION = "step2MergeDecision"
STAGE_FIELD_MERGE = "step3FieldMerge"
MAX_CREDIT_COST = 3


class PipelineState(enum.Enum):
    VALIDATE = "validate"
    BUILD_FILTERS = "build_filters"
    SEARCH = "search"
    DECIDE = "decide"
    FETCH_PRIMARY = "fetch_primary"
    PLAN_FIELD_MERGE = "plan_field_merge"
    APPLY = "apply"
    DONE = "done"


@dataclass(slots=True)
class MergeRequest:
    company: Dict[str, Any]
    record_id: str
    duplicate_rules: Optional[str] = None
    primary_rules: Optional[str] = None
    merge_rules: Optional[str] = None
    merge_property_rules: Optional[Dict[str, str]] = None
    merge_record: bool = False

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "MergeRequest":
        """Validate a request body and sanitize its rules. Raises ValidationError."""
        return cls(
            company=validate_company(payload.get("company")),
            record_id=validate_record_id(payload.get("recordId")),
            duplicate_rules=sanitize_rule(payload.get("duplicateRules")),
            primary_rules=sanitize_rule(payload.get("primaryRules")),
            merge_rules=sanitize_rule(payload.get("mergeRules")),
            merge_property_rules=sanitize_property_rules(payload.get("mergePropertyRules")),
            merge_record=payload.get("mergeRecord") is True,
        )

    def current_record(self) -> Dict[str, Any]:
        return {"id": self.record_id, **self.company}


@dataclass(slots=True)
class MergeRun:
    """Everything one pipeline run has produced so far."""

    request: MergeRequest
    usage: PipelineUsage
    state: PipelineState = PipelineState.VALIDATE
    json_schemas: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    duplicate_search: Optional[DuplicateSearchResult] = None
    duplicates: List[CompanyRecord] = field(default_factory=list)
    decision: Optional[MergeDecision] = None
    primary_record: Optional[CompanyRecord] = None
    field_merge: Optional[FieldMergePlan] = None
    record_updated: bool = False
    record_merged: bool = False

    @property
    def credit_cost(self) -> int:
        return min(self.usage.stage_count, MAX_CREDIT_COST)

    def to_response(self) -> Dict[str, Any]:
        request = self.request
        payload: Dict[str, Any] = {
            "company": request.company,
            "recordId": request.record_id,
            "duplicatesFound": bool(self.duplicates),
            "duplicateCount": len(self.duplicates),
            "duplicates": [record.to_dict() for record in self.duplicates],
            STAGE_DUPLICATE_SEARCH: self.duplicate_search.to_dict() if self.duplicate_search else None,
            STAGE_MERGE_DECISION: self.decision.to_dict() if self.decision else None,
        }
        if self.field_merge is not None:
            payload[STAGE_FIELD_MERGE] = self.field_merge.to_dict()
        payload.update(
            {
                "duplicateRules": request.duplicate_rules,
                "primaryRules": request.primary_rules,
                "mergeRules": request.merge_rules,
                "mergePropertyRules": request.merge_property_rules,
                "mergeRecord": request.merge_record,
                "recordUpdated": self.record_updated,
                "recordMerged": self.record_merged,
                "creditCost": self.credit_cost,
                "aiUsage": self.usage.to_dict(),
                "jsonSchemas": dict(self.json_schemas),
            }
        )
        return payload


class MergePipelineError(RuntimeError):
    """A stage failed; carries the run so completed stages can still be billed."""

    def __init__(self, message: str, *, state: PipelineState, run: MergeRun) -> None:
        super().__init__(message)
        self.state = state
        self.run = run

    @property
    def credit_cost(self) -> int:
        return self.run.credit_cost


class MergePipeline:
    def __init__(
        self,
        inference: StructuredInferenceClient,
        store: RecordStore,
        *,
        input_cost_per_mtok: float = 0.30,
        output_cost_per_mtok: float = 1.20,
    ) -> None:
        self.inference = inference
        self.store = store
        self.input_cost_per_mtok = input_cost_per_mtok
        self.output_cost_per_mtok = output_cost_per_mtok
        self._steps: Dict[PipelineState, Callable[[MergeRun], PipelineState]] = {
            PipelineState.VALIDATE: self._validate,
            PipelineState.BUILD_FILTERS: self._build_filters,
            PipelineState.SEARCH: self._search,
            PipelineState.DECIDE: self._decide,
            PipelineState.FETCH_PRIMARY: self._fetch_primary,
            PipelineState.PLAN_FIELD_MERGE: self._plan_field_merge,
            PipelineState.APPLY: self._apply,
        }

    def run(self, request: MergeRequest) -> MergeRun:
        run = MergeRun(
            request=request,
            usage=PipelineUsage(self.input_cost_per_mtok, self.output_cost_per_mtok),
        )
        while run.state is not PipelineState.DONE:
            current = run.state
            try:
                run.state = self._steps[current](run)
            except (InferenceFailure, StoreError) as exc:
                logger.error(
                    "Merge pipeline failed in %s for record %s after %d stage(s): %s",
                    current.value,
                    request.record_id,
                    run.usage.stage_count,
                    exc,
                )
                raise MergePipelineError(str(exc), state=current, run=run) from exc
            logger.debug("Merge pipeline %s -> %s", current.value, run.state.value)

        logger.info(
            "Merge pipeline finished for record %s: action=%s credits=%d updated=%s merged=%s",
            request.record_id,
            run.decision.recommended_action if run.decision else None,
            run.credit_cost,
            run.record_updated,
            run.record_merged,
        )
        return run

    def _infer(self, run: MergeRun, stage: str, name: str, document: Dict[str, Any], schema: Dict[str, Any]):
        run.json_schemas[stage] = schema
        return self.inference.complete(document, schema, name=name)

    def _validate(self, run: MergeRun) -> PipelineState:
        """Entry state. The body was checked once, in ``MergeRequest.from_payload``."""
        logger.info(
            "Merge pipeline started for record %s (%d properties, apply=%s)",
            run.request.record_id,
            len(run.request.company),
            run.request.merge_record,
        )
        return PipelineState.BUILD_FILTERS

    def _build_filters(self, run: MergeRun) -> PipelineState:
        schema = schemas.build_duplicate_search_schema(run.request.duplicate_rules)
        result = self._infer(run, STAGE_DUPLICATE_SEARCH, "duplicate_search", run.request.company, schema)
        try:
            search = DuplicateSearchResult.from_model_output(result.data)
        except MalformedOutputError as exc:
            raise InferenceFailure(f"Failed to generate duplicate search filters: {exc}") from exc

        search.filter_groups = sanitize_filter_groups(search.filter_groups)
        run.duplicate_search = search
        run.usage.add(STAGE_DUPLICATE_SEARCH, result.model, result.usage)
        return PipelineState.SEARCH

    def _search(self, run: MergeRun) -> PipelineState:
        record_id = run.request.record_id
        groups: List[FilterGroup] = [group for group in run.duplicate_search.filter_groups if group.filters]
        if not groups:
            logger.info("No usable filter groups for record %s; skipping CRM search", record_id)
            records: List[CompanyRecord] = []
        else:
            records = self.store.search(groups)

        # The current record always matches its own filters.
        seen = {record_id}
        others: List[CompanyRecord] = []
        for record in records:
            if record.id in seen:
                continue
            seen.add(record.id)
            others.append(record)
        run.duplicates = others

        if not others:
            run.decision = MergeDecision.no_duplicates(record_id)
            return PipelineState.DONE
        return PipelineState.DECIDE

    def _decide(self, run: MergeRun) -> PipelineState:
        schema = schemas.build_merge_decision_schema(run.request.primary_rules)
        document = {
            "currentRecord": run.request.current_record(),
            "duplicateRecords": [record.to_dict() for record in run.duplicates],
        }
        result = self._infer(run, STAGE_MERGE_DECISION, "merge_decision", document, schema)
        try:
            decision = MergeDecision.from_model_output(
                result.data,
                current_id=run.request.record_id,
                candidate_ids=[record.id for record in run.duplicates],
            )
        except MalformedOutputError as exc:
            raise InferenceFailure(f"Failed to generate merge decision: {exc}") from exc

        run.decision = decision
        run.usage.add(STAGE_MERGE_DECISION, result.model, result.usage)
        if decision.recommended_action == KEEP:
            return PipelineState.DONE
        return PipelineState.FETCH_PRIMARY

    def _fetch_primary(self, run: MergeRun) -> PipelineState:
        run.primary_record = self.store.fetch(run.decision.primary_record_id)
        return PipelineState.PLAN_FIELD_MERGE

    def _plan_field_merge(self, run: MergeRun) -> PipelineState:
        schema = schemas.build_field_merge_schema(run.request.merge_rules, run.request.merge_property_rules)
        document = {
            "currentRecord": run.request.current_record(),
            "primaryRecord": run.primary_record.to_dict(),
        }
        result = self._infer(run, STAGE_FIELD_MERGE, "field_merge", document, schema)
        try:
            plan = FieldMergePlan.from_model_output(result.data)
        except MalformedOutputError as exc:
            raise InferenceFailure(f"Failed to generate field merge analysis: {exc}") from exc

        run.field_merge = plan
        run.usage.add(STAGE_FIELD_MERGE, result.model, result.usage)
        return PipelineState.APPLY if run.request.merge_record else PipelineState.DONE

    def _apply(self, run: MergeRun) -> PipelineState:
        primary_id = run.decision.primary_record_id
        updates = run.field_merge.properties_to_update
        if updates:
            self.store.update(primary_id, updates)
            run.record_updated = True
        # No rollback of the update above if the merge fails.
        self.store.merge(primary_id, run.request.record_id)
        run.record_merged = True
        return PipelineState.DONE
