import pytest

from crm_hygiene.core import validation
from crm_hygiene.core.validation import ValidationError


def test_validate_company_accepts_flat_map():
    company = {"name": "Acme", "employees": 12, "active": True, "fax": None}
    assert validation.validate_company(company) is company


@pytest.mark.parametrize(
    "company, message",
    [
        (None, "Company object is required"),
        ([], "Company object is required"),
        ({}, "at least one property"),
        ({"address": {"city": "Gotham"}}, "nested object or array"),
        ({"tags": ["a", "b"]}, "nested object or array"),
        ({"notes": "x" * 10001}, "exceeds maximum length"),
    ],
)
def test_validate_company_rejects(company, message):
    with pytest.raises(ValidationError, match=message):
        validation.validate_company(company)


def test_validate_company_property_limit():
    too_many = {f"p{i}": "v" for i in range(51)}
    with pytest.raises(ValidationError, match="Maximum 50 allowed, received 51"):
        validation.validate_company(too_many)
    validation.validate_company({f"p{i}": "v" for i in range(50)})


def test_validate_record_id():
    assert validation.validate_record_id("  12345 ") == "12345"
    for bad in (None, "", "   ", 12345):
        with pytest.raises(ValidationError, match="Invalid recordId"):
            validation.validate_record_id(bad)


def test_validate_content_type():
    validation.validate_content_type("application/json; charset=utf-8")
    with pytest.raises(ValidationError):
        validation.validate_content_type(None)
    with pytest.raises(ValidationError):
        validation.validate_content_type("text/plain")


def test_sanitize_rule_strips_structural_characters():
    assert validation.sanitize_rule("  prefer {newest} <record> [always] \\ ") == "prefer newest record always"
    assert validation.sanitize_rule("   ") is None
    assert validation.sanitize_rule(None) is None
    assert validation.sanitize_rule(42) is None
    assert validation.sanitize_rule("{}[]") is None


def test_sanitize_rule_caps_length():
    assert len(validation.sanitize_rule("a" * 5000)) == validation.MAX_RULE_LENGTH


def test_sanitize_property_rules():
    assert validation.sanitize_property_rules({"phone": " E.164 {only} ", "fax": "  "}) == {"phone": "E.164 only"}
    assert validation.sanitize_property_rules({}) is None
    assert validation.sanitize_property_rules("phone: E.164") is None
    assert validation.sanitize_property_rules({f"p{i}": "rule" for i in range(21)}) is None


def test_public_error_message_hides_internals():
    assert validation.public_error_message(RuntimeError("Record 9 not found")) == "Record 9 not found"
    assert validation.public_error_message(RuntimeError("Invalid API key")) == "Invalid API key"
    leaked = RuntimeError("psycopg2.OperationalError: password authentication failed")
    assert validation.public_error_message(leaked) == validation.GENERIC_ERROR_MESSAGE
