import pytest

from crm_hygiene import server
from crm_hygiene.core.config import Settings
from crm_hygiene.core.db import ApiKeyRecord
from crm_hygiene.core.metering import AccessResult, MeteringError
from crm_hygiene.core.ratelimit import RateLimitExceeded
from crm_hygiene.models import CompanyRecord
from crm_hygiene.vendors.crm import CrmProvider, StoreError, UnsupportedProviderError
from crm_hygiene.vendors.openai_structured import InferenceFailure

SEARCH_OUTPUT = {
    "filterGroups": [{"filters": [{"propertyName": "domain", "operator": "EQ", "value": "acme.com", "values": None}]}],
    "reasoning": "Domain match.",
    "confidence": "HIGH",
}
MERGE_BODY = {"company": {"name": "Acme", "domain": "acme.com"}, "recordId": "101"}
AUTH_HEADERS = {"X-API-Key": "ck_live_123", "X-HubSpot-API-Key": "pat-123"}


class DummyGate:
    def __init__(self):
        self.access = AccessResult(allowed=True, remaining=50, limit=100)
        self.tracked = []
        self.track_error = None

    def check_access(self, user_id, feature_id):
        return self.access

    def track_usage(self, user_id, feature_id, amount):
        if self.track_error:
            raise self.track_error
        self.tracked.append((user_id, feature_id, amount))


class DummyLimiter:
    def __init__(self):
        self.error = None
        self.calls = []

    def check(self, endpoint, user_id):
        self.calls.append((endpoint, user_id))
        if self.error:
            raise self.error


@pytest.fixture
def env(monkeypatch, make_inference, make_store):
    state = {
        "gate": DummyGate(),
        "limiter": DummyLimiter(),
        "inference": make_inference(),
        "store": make_store(records={"101": {"name": "Acme"}}),
        "auth_calls": [],
        "touched": [],
        "credentials": [],
    }

    def fake_authenticate(api_key):
        state["auth_calls"].append(api_key)
        if api_key != "ck_live_123":
            raise server.AuthError("Invalid API key")
        return ApiKeyRecord(id="7", user_id="user_1")

    def fake_create_record_store(credential):
        state["credentials"].append(credential)
        if credential.provider is not CrmProvider.HUBSPOT:
            raise UnsupportedProviderError(f"{credential.provider.value.title()} integration is not yet supported")
        return state["store"]

    settings = Settings(openai_api_key="sk", database_url="postgres://db", autumn_secret_key="am")
    monkeypatch.setattr(server, "get_settings", lambda: settings)
    monkeypatch.setattr(server, "authenticate", fake_authenticate)
    monkeypatch.setattr(server, "touch_api_key", lambda key_id: state["touched"].append(key_id))
    monkeypatch.setattr(server, "get_gate", lambda: state["gate"])
    monkeypatch.setattr(server, "get_rate_limiter", lambda: state["limiter"])
    monkeypatch.setattr(server, "get_inference_client", lambda: state["inference"])
    monkeypatch.setattr(server, "create_record_store", fake_create_record_store)
    return state


@pytest.fixture
def client():
    return server.app.test_client()


def test_health_endpoint(env, client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"
    assert response.get_json()["model"] == "gpt-5-nano-2025-08-07"
    assert client.get("/").status_code == 200


def test_missing_api_key(env, client):
    response = client.post("/api/v1/companies/merge", json=MERGE_BODY)
    assert response.status_code == 401
    assert response.get_json()["error"] == "API key required"
    assert response.headers["X-Request-ID"].startswith("req_")
    assert response.get_json()["requestId"] == response.headers["X-Request-ID"]


def test_request_id_is_echoed(env, client):
    response = client.post("/api/v1/companies/merge", json=MERGE_BODY, headers={"X-Request-ID": "req_abc"})
    assert response.headers["X-Request-ID"] == "req_abc"


def test_wrong_content_type(env, client):
    response = client.post(
        "/api/v1/companies/clean",
        data="name=Acme",
        content_type="text/plain",
        headers={"X-API-Key": "ck_live_123"},
    )
    assert response.status_code == 400
    assert "Content-Type" in response.get_json()["error"]


def test_invalid_body_is_rejected_before_auth(env, client):
    response = client.post(
        "/api/v1/companies/merge",
        json={"company": {"name": "Acme"}},
        headers=AUTH_HEADERS,
    )
    assert response.status_code == 400
    assert "recordId" in response.get_json()["error"]
    assert env["auth_calls"] == []
    assert env["gate"].tracked == []


def test_invalid_api_key(env, client):
    response = client.post("/api/v1/companies/merge", json=MERGE_BODY, headers={**AUTH_HEADERS, "X-API-Key": "ck_bad"})
    assert response.status_code == 401
    assert response.get_json()["error"] == "Invalid API key"


def test_merge_requires_crm_header(env, client):
    response = client.post("/api/v1/companies/merge", json=MERGE_BODY, headers={"X-API-Key": "ck_live_123"})
    assert response.status_code == 401
    assert "X-HubSpot-API-Key" in response.get_json()["error"]


def test_unsupported_provider(env, client):
    response = client.post(
        "/api/v1/companies/merge",
        json=MERGE_BODY,
        headers={"X-API-Key": "ck_live_123", "X-Attio-API-Key": "attio"},
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "Attio integration is not yet supported"


def test_rate_limited(env, client):
    env["limiter"].error = RateLimitExceeded("per-minute", 10, 1_700_000_000.0)

    response = client.post("/api/v1/companies/merge", json=MERGE_BODY, headers=AUTH_HEADERS)

    assert response.status_code == 429
    assert response.headers["X-RateLimit-Limit"] == "10"
    assert response.headers["X-RateLimit-Remaining"] == "0"
    assert response.headers["X-RateLimit-Reset"].startswith("2023-11-14")
    assert env["limiter"].calls == [("merge-endpoint", "user_1")]


def test_insufficient_credits(env, client):
    env["gate"].access = AccessResult(allowed=False, remaining=0, limit=100)

    response = client.post("/api/v1/companies/merge", json=MERGE_BODY, headers=AUTH_HEADERS)

    assert response.status_code == 402
    body = response.get_json()
    assert body["remaining"] == 0
    assert body["limit"] == 100
    assert env["inference"].calls == []


def test_merge_without_duplicates(env, client):
    env["inference"].outputs = [SEARCH_OUTPUT]

    response = client.post("/api/v1/companies/merge", json=MERGE_BODY, headers=AUTH_HEADERS)

    assert response.status_code == 200
    body = response.get_json()
    assert body["creditCost"] == 1
    assert body["creditsRemaining"] == 50
    assert body["duplicatesFound"] is False
    assert body["step2MergeDecision"]["recommendedAction"] == "KEEP"
    assert env["gate"].tracked == [("user_1", "api_credits", 1)]
    assert env["touched"] == ["7"]


def test_merge_record_must_exist_before_writing(env, client):
    response = client.post(
        "/api/v1/companies/merge",
        json={**MERGE_BODY, "recordId": "999", "mergeRecord": True},
        headers=AUTH_HEADERS,
    )
    assert response.status_code == 404
    assert response.get_json()["error"] == "Record 999 not found"
    assert env["inference"].calls == []
    assert env["gate"].tracked == []


def test_merge_failure_bills_completed_stages(env, client):
    env["inference"].outputs = [SEARCH_OUTPUT, InferenceFailure("Language model returned no content for merge_decision")]
    env["store"].search_results = [CompanyRecord(id="202", properties={"name": "Acme Inc"})]

    response = client.post("/api/v1/companies/merge", json=MERGE_BODY, headers=AUTH_HEADERS)

    assert response.status_code == 500
    assert response.get_json()["error"] == server.GENERIC_ERROR_MESSAGE
    assert env["gate"].tracked == [("user_1", "api_credits", 1)]


def test_tracking_failure_is_a_server_error(env, client):
    env["inference"].outputs = [SEARCH_OUTPUT]
    env["gate"].track_error = MeteringError("Failed to track credit usage")

    response = client.post("/api/v1/companies/merge", json=MERGE_BODY, headers=AUTH_HEADERS)

    assert response.status_code == 500
    assert response.get_json()["error"] == "Failed to track credit usage"


def test_clean_without_crm_credentials(env, client):
    env["inference"].outputs = [
        {
            "cleanedCompany": {
                "name": {"value": "Acme", "reasoning": "Fine.", "confidence": "HIGH", "action": "UNCHANGED"},
            }
        }
    ]

    response = client.post(
        "/api/v1/companies/clean",
        json={"company": {"name": "Acme"}},
        headers={"X-API-Key": "ck_live_123"},
    )

    assert response.status_code == 200
    body = response.get_json()
    assert body["cleanedCompany"] == {"name": "Acme"}
    assert body["creditCost"] == 1
    assert env["limiter"].calls == [("clean-endpoint", "user_1")]
    assert env["gate"].tracked == [("user_1", "api_credits", 1)]


def test_purge_deletes_on_remove(env, client):
    env["inference"].outputs = [{"recommendedAction": "REMOVE", "reasoning": "Test data.", "confidence": "HIGH"}]

    response = client.post(
        "/api/v1/companies/purge",
        json={"company": {"name": "Test Co"}, "recordId": "101", "deleteRecord": True},
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 200
    assert response.get_json()["recordDeleted"] is True
    assert env["store"].call_names() == ["exists", "delete"]


def test_purge_delete_failure_still_bills(env, client):
    env["inference"].outputs = [{"recommendedAction": "REMOVE", "reasoning": "Test data.", "confidence": "HIGH"}]

    def broken_delete(record_id):
        raise StoreError("CRM delete failed with status 500", status_code=500)

    env["store"].delete = broken_delete

    response = client.post(
        "/api/v1/companies/purge",
        json={"company": {"name": "Test Co"}, "recordId": "101", "deleteRecord": True},
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 500
    assert env["gate"].tracked == [("user_1", "api_credits", 1)]


def test_purge_delete_requires_crm_header(env, client):
    response = client.post(
        "/api/v1/companies/purge",
        json={"company": {"name": "Test Co"}, "recordId": "101", "deleteRecord": True},
        headers={"X-API-Key": "ck_live_123"},
    )
    assert response.status_code == 401


def test_primary_missing_mid_pipeline_is_a_server_error(env, client):
    env["inference"].outputs = [
        SEARCH_OUTPUT,
        {"recommendedAction": "MERGE", "primaryRecordId": "202", "reasoning": "Older.", "confidence": "HIGH"},
    ]
    env["store"].search_results = [CompanyRecord(id="202", properties={"name": "Acme Inc"})]

    response = client.post("/api/v1/companies/merge", json=MERGE_BODY, headers=AUTH_HEADERS)

    assert response.status_code == 500
    assert env["gate"].tracked == [("user_1", "api_credits", 2)]
