"""HTTP entrypoint for the company clean, purge and merge API (Cloud Run friendly)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from flask import Flask, jsonify, request

from crm_hygiene.core import audit
from crm_hygiene.core.access import AuthError, QuotaError, authenticate, require_credits
from crm_hygiene.core.config import ConfigError, get_settings
from crm_hygiene.core.db import ApiKeyRecord, touch_api_key
from crm_hygiene.core.metering import MeteringError, get_gate
from crm_hygiene.core.ratelimit import RateLimitExceeded, get_rate_limiter
from crm_hygiene.core.validation import (
    GENERIC_ERROR_MESSAGE,
    ValidationError,
    public_error_message,
    validate_content_type,
)
from crm_hygiene.pipeline.clean import CleanRequest, run_clean
from crm_hygiene.pipeline.merge import MergePipeline, MergePipelineError, MergeRequest
from crm_hygiene.pipeline.purge import PurgeRequest, apply_purge, classify
from crm_hygiene.vendors.crm import (
    RecordNotFound,
    RecordStoreCredential,
    StoreError,
    UnsupportedProviderError,
    create_record_store,
    detect_credential,
)
from crm_hygiene.vendors.openai_structured import InferenceFailure, get_inference_client

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

# ---------- App ----------
app = Flask(__name__)

CRM_HEADER_HINT = "CRM API key required. Please provide X-HubSpot-API-Key header."


@dataclass
class RequestContext:
    request_id: str
    endpoint: str
    api_key: ApiKeyRecord
    body: Any
    credential: Optional[RecordStoreCredential]


# ---------- Routes ----------


@app.get("/")
def root() -> Any:
    """Simple root to avoid 404 on GET /"""
    return "ok", 200


@app.get("/healthz")
def healthcheck() -> Any:
    """Lightweight health endpoint; reads settings only."""
    settings = get_settings()
    return (
        jsonify(
            {
                "status": "ok",
                "model": settings.openai_model,
                "revision": os.getenv("K_REVISION", "unknown"),
            }
        ),
        200,
    )


@app.post("/api/v1/companies/merge")
def merge_company() -> Any:
    """Find duplicates of a company, pick the survivor, plan and optionally apply the merge."""
    request_id = _request_id()
    try:
        ctx = _begin(request_id, "merge-endpoint", MergeRequest.from_payload, crm_required=True)
        merge_request: MergeRequest = ctx.body
        store = create_record_store(ctx.credential)
        if merge_request.merge_record:
            _verify_exists(store, merge_request.record_id)

        settings = get_settings()
        pipeline = MergePipeline(
            get_inference_client(),
            store,
            input_cost_per_mtok=settings.input_cost_per_mtok,
            output_cost_per_mtok=settings.output_cost_per_mtok,
        )
        try:
            run = pipeline.run(merge_request)
        except MergePipelineError as exc:
            # Stages that finished before the failure are still billed.
            _charge_quietly(ctx, exc.credit_cost)
            return _error_response(exc.__cause__ or exc, request_id, in_pipeline=True)

        remaining = _charge(ctx, run.credit_cost)
        if run.record_updated:
            audit.log_event(
                audit.CRM_RECORD_UPDATED,
                request_id=request_id,
                user_id=ctx.api_key.user_id,
                record_id=run.decision.primary_record_id,
                properties=sorted(run.field_merge.properties_to_update),
            )
        if run.record_merged:
            audit.log_event(
                audit.CRM_RECORD_MERGED,
                request_id=request_id,
                user_id=ctx.api_key.user_id,
                primary_record_id=run.decision.primary_record_id,
                merged_record_id=merge_request.record_id,
            )

        payload = run.to_response()
        payload["creditsRemaining"] = remaining
        return _json(payload, 200, request_id)
    except Exception as exc:  # noqa: BLE001
        return _error_response(exc, request_id)


@app.post("/api/v1/companies/clean")
def clean_company() -> Any:
    """Clean every caller-supplied field in one model call; optionally write changes back."""
    request_id = _request_id()
    try:
        ctx = _begin(request_id, "clean-endpoint", CleanRequest.from_payload, crm_required=False)
        clean_request: CleanRequest = ctx.body

        store = None
        if clean_request.wants_write and ctx.credential is not None:
            store = create_record_store(ctx.credential)
            _verify_exists(store, clean_request.record_id)

        settings = get_settings()
        outcome = run_clean(
            clean_request,
            get_inference_client(),
            store,
            input_cost_per_mtok=settings.input_cost_per_mtok,
            output_cost_per_mtok=settings.output_cost_per_mtok,
        )
        remaining = _charge(ctx, outcome.credit_cost)
        if outcome.updated_properties:
            audit.log_event(
                audit.CRM_RECORD_UPDATED,
                request_id=request_id,
                user_id=ctx.api_key.user_id,
                record_id=clean_request.record_id,
                properties=sorted(outcome.updated_properties),
            )

        payload = outcome.to_response()
        payload["creditsRemaining"] = remaining
        return _json(payload, 200, request_id)
    except Exception as exc:  # noqa: BLE001
        return _error_response(exc, request_id)


@app.post("/api/v1/companies/purge")
def purge_company() -> Any:
    """Classify a company as REMOVE or KEEP; optionally delete it on REMOVE."""
    request_id = _request_id()
    try:
        ctx = _begin(request_id, "purge-endpoint", PurgeRequest.from_payload, crm_required=False)
        purge_request: PurgeRequest = ctx.body

        store = None
        if purge_request.wants_delete:
            if ctx.credential is None:
                raise AuthError(CRM_HEADER_HINT)
            store = create_record_store(ctx.credential)
            _verify_exists(store, purge_request.record_id)

        settings = get_settings()
        outcome = classify(
            purge_request,
            get_inference_client(),
            input_cost_per_mtok=settings.input_cost_per_mtok,
            output_cost_per_mtok=settings.output_cost_per_mtok,
        )
        if store is not None:
            try:
                apply_purge(outcome, store)
            except StoreError as exc:
                _charge_quietly(ctx, outcome.credit_cost)
                return _error_response(exc, request_id, in_pipeline=True)

        remaining = _charge(ctx, outcome.credit_cost)
        if outcome.record_deleted:
            audit.log_event(
                audit.CRM_RECORD_DELETED,
                request_id=request_id,
                user_id=ctx.api_key.user_id,
                record_id=purge_request.record_id,
            )

        payload = outcome.to_response()
        payload["creditsRemaining"] = remaining
        return _json(payload, 200, request_id)
    except Exception as exc:  # noqa: BLE001
        return _error_response(exc, request_id)


# ---------- Internals ----------


def _request_id() -> str:
    return request.headers.get("X-Request-ID") or audit.new_request_id()


def _begin(
    request_id: str,
    endpoint: str,
    parse: Callable[[Dict[str, Any]], Any],
    *,
    crm_required: bool,
) -> RequestContext:
    """Run every check that happens before any billable work.

    Body validation runs before the key lookup so a malformed request never
    reaches the database, the rate limiter or the billing API.
    """
    raw_key = request.headers.get("X-API-Key")
    if not raw_key:
        audit.log_event(audit.AUTH_FAILED, request_id=request_id, success=False, error_message="missing X-API-Key")
        raise AuthError("API key required")

    validate_content_type(request.headers.get("Content-Type"))
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON in request body")
    body = parse(payload)

    try:
        api_key = authenticate(raw_key)
    except AuthError:
        audit.log_event(audit.AUTH_INVALID_API_KEY, request_id=request_id, success=False)
        raise

    credential = detect_credential(request.headers)
    if crm_required and credential is None:
        raise AuthError(CRM_HEADER_HINT)

    try:
        get_rate_limiter().check(endpoint, api_key.user_id)
    except RateLimitExceeded:
        audit.log_event(audit.RATE_LIMIT_EXCEEDED, request_id=request_id, user_id=api_key.user_id, success=False)
        raise

    try:
        require_credits(get_gate(), api_key.user_id, get_settings().meter_feature_id)
    except QuotaError:
        audit.log_event(audit.CREDITS_INSUFFICIENT, request_id=request_id, user_id=api_key.user_id, success=False)
        raise

    return RequestContext(
        request_id=request_id,
        endpoint=endpoint,
        api_key=api_key,
        body=body,
        credential=credential,
    )


def _verify_exists(store: Any, record_id: str) -> None:
    if not store.exists(record_id):
        raise RecordNotFound(f"Record {record_id} not found", status_code=404)


def _charge(ctx: RequestContext, amount: int) -> float:
    """Deduct credits, stamp the API key and return the remaining balance."""
    gate = get_gate()
    feature_id = get_settings().meter_feature_id
    gate.track_usage(ctx.api_key.user_id, feature_id, amount)
    audit.log_event(
        audit.CREDITS_CONSUMED,
        request_id=ctx.request_id,
        user_id=ctx.api_key.user_id,
        api_key_id=ctx.api_key.id,
        endpoint=ctx.endpoint,
        amount=amount,
    )

    try:
        touch_api_key(ctx.api_key.id)
        audit.log_event(audit.API_KEY_USED, request_id=ctx.request_id, user_id=ctx.api_key.user_id, api_key_id=ctx.api_key.id)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Failed to stamp last_used for api key %s: %s", ctx.api_key.id, exc)

    return gate.check_access(ctx.api_key.user_id, feature_id).remaining or 0


def _charge_quietly(ctx: RequestContext, amount: int) -> None:
    """Bill completed stages on a failure path without masking the original error."""
    if amount <= 0:
        return
    try:
        _charge(ctx, amount)
    except MeteringError as exc:
        logger.error("[%s] Could not bill %d credit(s) after failure: %s", ctx.request_id, amount, exc)


def _json(payload: Dict[str, Any], status: int, request_id: str, headers: Optional[Dict[str, str]] = None) -> Tuple[Any, int]:
    response = jsonify(payload)
    response.headers["X-Request-ID"] = request_id
    for key, value in (headers or {}).items():
        response.headers[key] = value
    return response, status


def _error_response(exc: BaseException, request_id: str, *, in_pipeline: bool = False) -> Tuple[Any, int]:
    """Map an exception to a JSON error body; tracebacks only ever reach the logs.

    A missing record is a 404 only before any stage ran; inside a stage it is a
    store failure like any other.
    """
    body: Dict[str, Any] = {"requestId": request_id}
    headers: Dict[str, str] = {}

    if isinstance(exc, ValidationError):
        audit.log_event(audit.VALIDATION_FAILED, request_id=request_id, success=False, error_message=str(exc))
        status, body["error"] = 400, str(exc)
    elif isinstance(exc, UnsupportedProviderError):
        status, body["error"] = 400, str(exc)
    elif isinstance(exc, AuthError):
        status, body["error"] = 401, str(exc)
    elif isinstance(exc, QuotaError):
        status, body["error"] = 402, str(exc)
        body.update({"remaining": exc.remaining, "limit": exc.limit})
    elif isinstance(exc, RateLimitExceeded):
        reset = datetime.fromtimestamp(exc.reset_at, tz=timezone.utc).isoformat()
        status, body["error"] = 429, str(exc)
        body.update({"limit": exc.limit, "remaining": exc.remaining, "reset": reset})
        headers = {
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": str(exc.remaining),
            "X-RateLimit-Reset": reset,
        }
    elif isinstance(exc, RecordNotFound) and not in_pipeline:
        status, body["error"] = 404, str(exc)
    elif isinstance(exc, MeteringError):
        logger.error("[%s] %s", request_id, exc)
        status, body["error"] = 500, "Failed to track credit usage"
    elif isinstance(exc, InferenceFailure):
        logger.error("[%s] Inference failed: %s", request_id, exc)
        status, body["error"] = 500, public_error_message(exc)
    elif isinstance(exc, StoreError):
        logger.error("[%s] CRM call failed: %s %s", request_id, exc, getattr(exc, "detail", ""))
        status, body["error"] = 500, public_error_message(exc)
    elif isinstance(exc, ConfigError):
        logger.error("[%s] Configuration error: %s", request_id, exc)
        status, body["error"] = 500, GENERIC_ERROR_MESSAGE
    else:
        logger.exception("[%s] Unhandled error: %s", request_id, exc)
        audit.log_event(audit.ERROR_OCCURRED, request_id=request_id, success=False, error_message=type(exc).__name__)
        status, body["error"] = 500, "Internal server error"

    return _json(body, status, request_id, headers)


def main() -> None:
    """Cloud Run injects PORT (usually 8080); fall back to settings locally."""
    env_port = os.getenv("PORT")
    logger.info("[BOOT] ENV PORT=%s", env_port)

    port = int(env_port or get_settings().port)
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
