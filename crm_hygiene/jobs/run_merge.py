"""CLI job to run the duplicate merge pipeline for one company record.

Talks to the language model and HubSpot directly; no API key lookup and no
credit metering happens here.
"""

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, Optional, Sequence

from crm_hygiene.core.config import ConfigError, get_settings
from crm_hygiene.core.validation import ValidationError
from crm_hygiene.pipeline.merge import MergePipeline, MergePipelineError, MergeRequest
from crm_hygiene.vendors.crm import CrmProvider, RecordStoreCredential, create_record_store
from crm_hygiene.vendors.openai_structured import get_inference_client

logger = logging.getLogger(__name__)


def run_merge_job(payload: Dict[str, Any], *, hubspot_api_key: str) -> Dict[str, Any]:
    if not hubspot_api_key:
        raise ConfigError("HUBSPOT_API_KEY is required")

    request = MergeRequest.from_payload(payload)
    settings = get_settings()
    store = create_record_store(RecordStoreCredential(CrmProvider.HUBSPOT, hubspot_api_key))
    pipeline = MergePipeline(
        get_inference_client(),
        store,
        input_cost_per_mtok=settings.input_cost_per_mtok,
        output_cost_per_mtok=settings.output_cost_per_mtok,
    )

    logger.info("Running merge pipeline for record=%s apply=%s", request.record_id, request.merge_record)
    run = pipeline.run(request)
    logger.info("Completed run: stages=%d credits=%d", run.usage.stage_count, run.credit_cost)
    return run.to_response()


def build_payload(args: argparse.Namespace) -> Dict[str, Any]:
    try:
        company = json.loads(args.company)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"--company is not valid JSON: {exc}") from exc

    merge_property_rules: Optional[Dict[str, str]] = None
    if args.merge_property_rules:
        try:
            merge_property_rules = json.loads(args.merge_property_rules)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"--merge-property-rules is not valid JSON: {exc}") from exc

    return {
        "company": company,
        "recordId": args.record_id,
        "duplicateRules": args.duplicate_rules,
        "primaryRules": args.primary_rules,
        "mergeRules": args.merge_rules,
        "mergePropertyRules": merge_property_rules,
        "mergeRecord": args.apply,
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Find and merge duplicates of one HubSpot company")
    parser.add_argument("--record-id", dest="record_id", required=True, help="CRM id of the current record")
    parser.add_argument("--company", dest="company", required=True, help="Company properties as a JSON object")
    parser.add_argument("--duplicate-rules", dest="duplicate_rules", help="Extra guidance for duplicate search")
    parser.add_argument("--primary-rules", dest="primary_rules", help="Extra guidance for picking the survivor")
    parser.add_argument("--merge-rules", dest="merge_rules", help="Extra guidance for the field merge")
    parser.add_argument(
        "--merge-property-rules",
        dest="merge_property_rules",
        help='Per-property guidance as JSON, e.g. {"phone": "prefer E.164"}',
    )
    parser.add_argument(
        "--apply",
        dest="apply",
        action="store_true",
        help="Write the field merge and merge the records in HubSpot",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        payload = build_payload(args)
        result = run_merge_job(payload, hubspot_api_key=os.getenv("HUBSPOT_API_KEY", ""))
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 2
    except ValidationError as exc:
        logger.error("Invalid input: %s", exc)
        return 1
    except MergePipelineError as exc:
        logger.error("Merge failed in %s after %d credit(s): %s", exc.state.value, exc.credit_cost, exc)
        return 1

    json.dump(result, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
