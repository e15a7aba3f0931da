import sys
from pathlib import Path

import pytest

# Ensure the `crm_hygiene` package is importable when running pytest from the repo root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from crm_hygiene.models import CompanyRecord, TokenUsage  # noqa: E402
from crm_hygiene.vendors.crm import RecordNotFound  # noqa: E402
from crm_hygiene.vendors.openai_structured import InferenceResult  # noqa: E402


class FakeInference:
    """Returns queued model outputs in order and records what was sent."""

    def __init__(self, *outputs, model="gpt-test"):
        self.outputs = list(outputs)
        self.model = model
        self.calls = []

    def complete(self, document, schema, *, name):
        self.calls.append({"document": document, "schema": schema, "name": name})
        if not self.outputs:
            raise AssertionError(f"unexpected inference call for {name}")
        output = self.outputs.pop(0)
        if isinstance(output, Exception):
            raise output
        return InferenceResult(
            data=output,
            usage=TokenUsage(input_tokens=1000, output_tokens=500, reasoning_tokens=100, total_tokens=1500),
            model=self.model,
        )


class FakeStore:
    """In-memory record store that logs every call."""

    def __init__(self, records=None, search_results=None):
        self.records = dict(records or {})
        self.search_results = list(search_results or [])
        self.calls = []

    def search(self, filter_groups, properties=(), limit=100):
        self.calls.append(("search", [group.to_dict() for group in filter_groups]))
        return list(self.search_results)

    def fetch(self, record_id, properties=()):
        self.calls.append(("fetch", record_id))
        if record_id not in self.records:
            raise RecordNotFound(f"Record {record_id} not found", status_code=404)
        return CompanyRecord(id=record_id, properties=dict(self.records[record_id]))

    def exists(self, record_id):
        self.calls.append(("exists", record_id))
        return record_id in self.records

    def update(self, record_id, properties):
        self.calls.append(("update", record_id, dict(properties)))
        self.records.setdefault(record_id, {}).update(properties)

    def merge(self, primary_id, merged_id):
        self.calls.append(("merge", primary_id, merged_id))
        self.records.pop(merged_id, None)

    def delete(self, record_id):
        self.calls.append(("delete", record_id))
        self.records.pop(record_id, None)

    def call_names(self):
        return [call[0] for call in self.calls]


@pytest.fixture
def make_inference():
    return FakeInference


@pytest.fixture
def make_store():
    return FakeStore
