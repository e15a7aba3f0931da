"""JSON Schemas sent to the model for each workflow stage.

Base templates are module constants and are never mutated; every builder
returns a deep copy with caller rules appended to ``description`` strings only.
"""

import copy
from typing import Any, Dict, Iterable, Mapping, Optional

from crm_hygiene.core.validation import sanitize_property_rules, sanitize_rule

CONFIDENCE_ENUM = ["LOW", "MEDIUM", "HIGH"]
FILTER_OPERATORS = [
    "EQ",
    "NEQ",
    "LT",
    "LTE",
    "GT",
    "GTE",
    "BETWEEN",
    "IN",
    "NOT_IN",
    "HAS_PROPERTY",
    "NOT_HAS_PROPERTY",
    "CONTAINS_TOKEN",
]
CLEAN_ACTIONS = ["UNCHANGED", "CORRECTED", "POPULATED", "REMOVED"]

DUPLICATE_SEARCH_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "description": (
        "Generate CRM search filters. Extract clean property values from input - NO JSON syntax chars in "
        "values. OR logic between filterGroups, AND within. Max 5 groups. Priority 1=domain; "
        "Priority 2=name+city/phone/fuzzy; Priority 3=address+city."
    ),
    "properties": {
        "filterGroups": {
            "type": "array",
            "description": "Filter groups combined with OR logic. Each group is independent duplicate criterion.",
            "items": {
                "type": "object",
                "description": "Single filter group with AND logic between all filters.",
                "properties": {
                    "filters": {
                        "type": "array",
                        "description": "Filters within group (AND logic). Skip null/empty properties.",
                        "items": {
                            "type": "object",
                            "description": "Single filter: property + operator + value. VALUE MUST BE CLEAN STRING.",
                            "properties": {
                                "propertyName": {
                                    "type": "string",
                                    "description": (
                                        "CRM property: name/domain/website/phone/city/state/zip/country/address. "
                                        "Lowercase, no spaces."
                                    ),
                                },
                                "operator": {
                                    "type": "string",
                                    "description": (
                                        "EQ=exact match, CONTAINS_TOKEN=fuzzy text, IN=multiple values, "
                                        "HAS_PROPERTY=exists check."
                                    ),
                                    "enum": FILTER_OPERATORS,
                                },
                                "value": {
                                    "type": ["string", "null"],
                                    "description": (
                                        "Extract ONLY the core property value - no extra characters. "
                                        "CORRECT: 'acme.com', 'John Smith', '555-1234'. WRONG: 'acme.com}', "
                                        "'acme.com:80', 'acme.com/path', 'http://acme.com'. For domains: strip "
                                        "protocol/port/path/query. Null for HAS_PROPERTY/NOT_HAS_PROPERTY/IN/NOT_IN."
                                    ),
                                },
                                "values": {
                                    "type": ["array", "null"],
                                    "description": "Array of strings for IN/NOT_IN operators only. Null otherwise.",
                                    "items": {"type": "string"},
                                },
                            },
                            "required": ["propertyName", "operator", "value", "values"],
                            "additionalProperties": False,
                        },
                    }
                },
                "required": ["filters"],
                "additionalProperties": False,
            },
        },
        "reasoning": {
            "type": "string",
            "description": "1 sentence: explain duplicate search strategy and key properties used.",
        },
        "confidence": {
            "type": "string",
            "description": "HIGH=strong identifiers (domain/phone). MEDIUM=name+location. LOW=weak/generic data.",
            "enum": CONFIDENCE_ENUM,
        },
    },
    "required": ["filterGroups", "reasoning", "confidence"],
    "additionalProperties": False,
}

MERGE_DECISION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "description": (
        "Decide KEEP vs MERGE for current record. Score each record: completeness 40%, quality 25%, "
        "engagement 20%, source reliability 10%, history 5%. TIEBREAKER: when two records score within "
        "5 points of each other, the one with the oldest createdate wins."
    ),
    "properties": {
        "recommendedAction": {
            "type": "string",
            "description": (
                "KEEP=current record stays primary (primaryRecordId=current). "
                "MERGE=current merges into primaryRecordId (another duplicate)."
            ),
            "enum": ["MERGE", "KEEP"],
        },
        "reasoning": {
            "type": "string",
            "description": (
                "2-3 sentences: (1) Why duplicates/not, (2) Why this primary choice, (3) Key factors. "
                "Include relevant dates/scores if using tiebreaker."
            ),
        },
        "confidence": {
            "type": "string",
            "description": (
                "HIGH=clear indicators (domain/phone match) + 80%+ overlap. MEDIUM=50-80% overlap + minor "
                "conflicts. LOW=weak indicators/conflicts."
            ),
            "enum": CONFIDENCE_ENUM,
        },
        "primaryRecordId": {
            "type": "string",
            "description": (
                "ID of primary record. Equals current ID if KEEP, duplicate ID if MERGE. "
                "TIEBREAKER: when scores within 5pts, select oldest createdate."
            ),
        },
    },
    "required": ["recommendedAction", "reasoning", "confidence", "primaryRecordId"],
    "additionalProperties": False,
}

FIELD_MERGE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "description": "Field-level merge analysis. Only update primary with better/newer values from current.",
    "properties": {
        "primaryRecordPropertiesToUpdate": {
            "type": "array",
            "description": (
                "Properties of the primary record to overwrite with the current record's value. Only include "
                "a property if the current value is better than the primary value. Empty [] if no updates."
            ),
            "items": {
                "type": "object",
                "properties": {
                    "propertyName": {"type": "string", "description": "CRM property name."},
                    "value": {"type": "string", "description": "New value, taken from the current record."},
                },
                "required": ["propertyName", "value"],
                "additionalProperties": False,
            },
        },
        "reasoning": {"type": "string", "description": "1-2 sentences: merge strategy + key decisions."},
        "confidence": {
            "type": "string",
            "enum": CONFIDENCE_ENUM,
            "description": "HIGH=clear path, MEDIUM=ambiguity, LOW=uncertain.",
        },
    },
    "required": ["primaryRecordPropertiesToUpdate", "reasoning", "confidence"],
    "additionalProperties": False,
}

PURGE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "description": (
        "Decide whether a CRM company record should be REMOVED or KEPT. Be CONSERVATIVE: only REMOVE "
        "clearly unusable data - obvious test terminology in the name (test, demo, example, sample, asdf, "
        "qwerty, xxx, dummy), test domains (example.com, test.com, localhost, fake.com), fabricated names "
        "('Fake Company', 'Delete Me Corp'), names that are only numbers or symbols, or no company name AND "
        "no domain/website. KEEP every legitimate company, even with incomplete data. When in doubt, KEEP."
    ),
    "properties": {
        "recommendedAction": {
            "type": "string",
            "description": "REMOVE only for clear test/fake/empty-identity records. KEEP otherwise.",
            "enum": ["REMOVE", "KEEP"],
        },
        "reasoning": {
            "type": "string",
            "description": (
                "A paragraph referencing specific data points: which test/fake indicators were found for "
                "REMOVE, or which valid identifiers justify KEEP. Mention any user rule that was applied."
            ),
        },
        "confidence": {
            "type": "string",
            "description": (
                "HIGH=obvious indicators or clear rule match. MEDIUM=some indicators, not certain. "
                "LOW=ambiguous or borderline."
            ),
            "enum": CONFIDENCE_ENUM,
        },
    },
    "required": ["recommendedAction", "reasoning", "confidence"],
    "additionalProperties": False,
}

CLEAN_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "description": (
        "CRM company data cleaning schema. RULES: (1) Valid data -> unchanged. (2) Invalid/poor format + high "
        "confidence -> correct it. (3) Invalid/test/placeholder + unknown -> null. (4) Empty + no info -> null. "
        "(5) Empty + high confidence -> populate. Only provide values with high certainty."
    ),
    "properties": {
        "cleanedCompany": {
            "type": "object",
            "description": "One entry per input property.",
            "properties": {},
            "required": [],
            "additionalProperties": False,
        }
    },
    "required": ["cleanedCompany"],
    "additionalProperties": False,
}

CLEAN_FIELD_GUIDANCE: Dict[str, str] = {
    "name": "Common/trade name. Proper case, no excess whitespace, standardized abbreviations. Test/fake names -> null.",
    "legalName": "Official registered name with corporate suffix (Inc., LLC, Ltd., AB, GmbH).",
    "description": "Brief business description. Proper grammar, professional tone, concise.",
    "industry": "Primary industry/sector. Standard naming conventions (NAICS, SIC).",
    "domain": "Bare domain, lowercase, no protocol or path (acme.com).",
    "website": "Primary URL. Format: https://www.company.com. Add protocol if missing.",
    "city": "HQ city. Proper case, full names, no abbreviations.",
    "state": "State/province/region. US: 2-letter codes (CA, NY). Others: full names.",
    "country": "Country name (United States) or ISO code (US).",
    "zip": "Postal/ZIP code. Country-appropriate format. Invalid -> null.",
    "postalCode": "Postal/ZIP code. Country-appropriate format. Invalid -> null.",
    "phone": "Primary phone. International format with country code (+1-555-123-4567).",
    "address": "Street address. Proper case, standardized abbreviations (St., Ave.).",
    "street": "Street address. Proper case, standardized abbreviations (St., Ave.).",
    "linkedin": "LinkedIn company page URL. Format: https://www.linkedin.com/company/name",
    "linkedIn": "LinkedIn company page URL. Format: https://www.linkedin.com/company/name",
    "facebook": "Facebook page URL. Format: https://www.facebook.com/name",
    "instagram": "Instagram account URL. Format: https://www.instagram.com/name",
    "twitter": "Twitter/X account URL. Format: https://twitter.com/name or https://x.com/name",
}
GENERIC_FIELD_GUIDANCE = "Clean this value: fix formatting, keep valid data unchanged, null for test/placeholder data."

_RULE_PREFIX = " User rules: "


def _append_rule(target: Dict[str, Any], rule: Optional[str], prefix: str = _RULE_PREFIX) -> None:
    if rule:
        target["description"] = f"{target.get('description', '')}{prefix}{rule}"


def _property_rules_text(property_rules: Optional[Mapping[str, str]]) -> str:
    if not property_rules:
        return ""
    return ", ".join(f"{name}: {rule}" for name, rule in property_rules.items())


def build_duplicate_search_schema(duplicate_rules: Optional[str] = None) -> Dict[str, Any]:
    schema = copy.deepcopy(DUPLICATE_SEARCH_SCHEMA)
    _append_rule(schema, sanitize_rule(duplicate_rules))
    return schema


def build_merge_decision_schema(primary_rules: Optional[str] = None) -> Dict[str, Any]:
    schema = copy.deepcopy(MERGE_DECISION_SCHEMA)
    _append_rule(schema, sanitize_rule(primary_rules))
    return schema


def build_field_merge_schema(
    merge_rules: Optional[str] = None,
    merge_property_rules: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    schema = copy.deepcopy(FIELD_MERGE_SCHEMA)
    _append_rule(schema, sanitize_rule(merge_rules))
    property_text = _property_rules_text(sanitize_property_rules(merge_property_rules))
    if property_text:
        _append_rule(
            schema["properties"]["primaryRecordPropertiesToUpdate"],
            property_text,
            prefix=" User property rules: ",
        )
    return schema


def build_purge_schema(purge_rules: Optional[str] = None) -> Dict[str, Any]:
    schema = copy.deepcopy(PURGE_SCHEMA)
    _append_rule(
        schema,
        sanitize_rule(purge_rules),
        prefix=" CUSTOM PURGE RULES (take precedence over the defaults above, mention them in reasoning): ",
    )
    return schema


def _clean_field_schema(description: str) -> Dict[str, Any]:
    return {
        "type": "object",
        "description": description,
        "properties": {
            "value": {"type": ["string", "null"], "description": "Cleaned value, or null when unusable."},
            "reasoning": {
                "type": "string",
                "description": "3 sentences: (1) original value/issue, (2) action taken, (3) why the result is correct.",
            },
            "confidence": {"type": "string", "enum": CONFIDENCE_ENUM},
            "action": {"type": "string", "enum": CLEAN_ACTIONS},
        },
        "required": ["value", "reasoning", "confidence", "action"],
        "additionalProperties": False,
    }


def build_clean_schema(
    field_names: Iterable[str],
    clean_rules: Optional[str] = None,
    clean_property_rules: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Schema whose ``cleanedCompany`` has exactly the caller's properties, all required."""
    schema = copy.deepcopy(CLEAN_SCHEMA)
    _append_rule(
        schema,
        sanitize_rule(clean_rules),
        prefix=" IMPORTANT: prioritize these user instructions over the rules above. User instructions: ",
    )

    property_rules = sanitize_property_rules(clean_property_rules) or {}
    cleaned = schema["properties"]["cleanedCompany"]
    for name in field_names:
        field_schema = _clean_field_schema(CLEAN_FIELD_GUIDANCE.get(name, GENERIC_FIELD_GUIDANCE))
        _append_rule(
            field_schema,
            property_rules.get(name),
            prefix=" IMPORTANT: prioritize these user instructions. User instructions: ",
        )
        cleaned["properties"][name] = field_schema
        cleaned["required"].append(name)
    return schema
