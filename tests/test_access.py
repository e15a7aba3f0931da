import json
from unittest.mock import Mock

import pytest

from crm_hygiene.core import access, audit, db
from crm_hygiene.core.metering import AccessResult


class DummyGate:
    def __init__(self, result):
        self.result = result
        self.calls = []

    def check_access(self, user_id, feature_id):
        self.calls.append((user_id, feature_id))
        return self.result


def test_authenticate_requires_key():
    with pytest.raises(access.AuthError, match="API key required"):
        access.authenticate("")


def test_authenticate_rejects_unknown_key(monkeypatch):
    lookup = Mock(return_value=None)
    monkeypatch.setattr(db, "lookup_api_key", lookup)
    with pytest.raises(access.AuthError, match="Invalid API key"):
        access.authenticate("ck_bad")
    lookup.assert_called_once_with("ck_bad")


def test_authenticate_returns_record(monkeypatch):
    record = db.ApiKeyRecord(id="7", user_id="user_1")
    monkeypatch.setattr(db, "lookup_api_key", lambda key: record)
    assert access.authenticate("ck_good") is record


def test_require_credits():
    gate = DummyGate(AccessResult(allowed=True, remaining=10, limit=100))
    assert access.require_credits(gate, "user_1", "api_credits").remaining == 10
    assert gate.calls == [("user_1", "api_credits")]

    denied = DummyGate(AccessResult(allowed=False, remaining=None, limit=100))
    with pytest.raises(access.QuotaError) as excinfo:
        access.require_credits(denied, "user_1", "api_credits")
    assert excinfo.value.remaining == 0
    assert excinfo.value.limit == 100
    assert "Insufficient credits" in str(excinfo.value)


def test_audit_event_is_logged_as_json(caplog):
    with caplog.at_level("INFO", logger="crm_hygiene.audit"):
        event = audit.log_event(
            audit.CREDITS_CONSUMED,
            request_id="req_1",
            user_id="user_1",
            amount=3,
        )

    logged = json.loads(caplog.messages[-1].removeprefix("[AUDIT] "))
    assert logged["eventType"] == "credits.consumed"
    assert logged["metadata"] == {"amount": 3}
    assert logged["id"] == event["id"]
    assert "errorMessage" not in logged
    assert audit.new_request_id().startswith("req_")
