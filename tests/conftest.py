import copy
import os
from datetime import datetime, timezone
from uuid import uuid4

import pytest

os.environ.setdefault("DATABASE_URL", "postgresql://localhost:5432/eca_test")
os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role-key")

from src.observability import reset_metrics  # noqa: E402


ORG_ID = "11111111-1111-4111-8111-111111111111"
OTHER_ORG_ID = "22222222-2222-4222-8222-222222222222"


def _ts() -> str:
    return datetime.now(timezone.utc).isoformat()


class FakeResponse:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    def __init__(self, table_name: str, db: "FakeSupabase"):
        self.table_name = table_name
        self.db = db
        self.operation = "select"
        self.insert_payload = None
        self.update_payload = None
        self.filters = []
        self.row_limit = None

    def select(self, _fields: str):
        self.operation = "select"
        return self

    def insert(self, payload: dict):
        self.operation = "insert"
        self.insert_payload = payload
        return self

    def update(self, payload: dict):
        self.operation = "update"
        self.update_payload = payload
        return self

    def eq(self, key: str, value):
        self.filters.append(("eq", key, value))
        return self

    def is_(self, key: str, value):
        self.filters.append(("is", key, value))
        return self

    def limit(self, count: int):
        self.row_limit = count
        return self

    def _matches(self, row: dict) -> bool:
        for kind, key, value in self.filters:
            if kind == "eq" and row.get(key) != value:
                return False
            if kind == "is" and value == "null" and row.get(key) is not None:
                return False
        return True

    def execute(self):
        self.db.calls.append((self.table_name, self.operation))
        failure = self.db.fail_on.get((self.table_name, self.operation))
        if failure is not None:
            raise failure
        table = self.db.tables.setdefault(self.table_name, [])
        if self.operation == "insert":
            payload = self.insert_payload or {}
            if self.table_name == "tenant_business_transactions" and payload.get("external_id") is not None:
                for row in table:
                    if (
                        row.get("deleted_at") is None
                        and row.get("organization_id") == payload.get("organization_id")
                        and row.get("transaction_type") == payload.get("transaction_type")
                        and row.get("external_id") == payload.get("external_id")
                    ):
                        raise Exception(
                            'duplicate key value violates unique constraint "uq_tbt_live_natural_key"'
                        )
            row = copy.deepcopy(payload)
            row.setdefault("id", str(uuid4()))
            row.setdefault("created_at", _ts())
            row.setdefault("deleted_at", None)
            table.append(row)
            return FakeResponse([copy.deepcopy(row)])

        if self.operation == "update":
            updated = []
            for row in table:
                if self._matches(row):
                    row.update(copy.deepcopy(self.update_payload or {}))
                    updated.append(copy.deepcopy(row))
            return FakeResponse(updated)

        rows = [copy.deepcopy(row) for row in table if self._matches(row)]
        if self.row_limit is not None:
            rows = rows[: self.row_limit]
        return FakeResponse(rows)


class FakeRpc:
    def __init__(self, name: str, params: dict, db: "FakeSupabase"):
        self.name = name
        self.params = params
        self.db = db

    def execute(self):
        self.db.calls.append(("rpc", self.name))
        failure = self.db.fail_on.get(("rpc", self.name))
        if failure is not None:
            raise failure
        handler = getattr(self.db, f"_rpc_{self.name}")
        return FakeResponse([copy.deepcopy(handler(self.params))])


class FakeSupabase:
    """In-memory stand-in for the query builder, the live-row unique indexes and the upsert functions."""

    def __init__(self, tables: dict | None = None):
        self.tables = tables if tables is not None else {}
        self.fail_on = {}
        self.calls = []

    def table(self, table_name: str):
        return FakeQuery(table_name, self)

    def rpc(self, name: str, params: dict):
        return FakeRpc(name, params, self)

    def rows(self, table_name: str) -> list:
        return self.tables.setdefault(table_name, [])

    def _rpc_eca_upsert_entity(self, params: dict) -> dict:
        table = self.rows("tenant_business_entities")
        for row in table:
            if (
                row.get("deleted_at") is None
                and row["organization_id"] == params["p_organization_id"]
                and row["entity_type"] == params["p_entity_type"]
                and row["external_id"] == params["p_external_id"]
            ):
                row["attributes"] = {**row["attributes"], **(params["p_attributes"] or {})}
                row["updated_at"] = _ts()
                return row
        now = _ts()
        row = {
            "id": str(uuid4()),
            "organization_id": params["p_organization_id"],
            "entity_type": params["p_entity_type"],
            "external_id": params["p_external_id"],
            "attributes": copy.deepcopy(params["p_attributes"] or {}),
            "created_at": now,
            "updated_at": now,
            "deleted_at": None,
        }
        table.append(row)
        return row

    def _rpc_eca_upsert_relationship(self, params: dict) -> dict:
        table = self.rows("tenant_business_relationships")
        single = params["p_multiplicity"] == "single"
        for row in table:
            if (
                row.get("deleted_at") is None
                and row["organization_id"] == params["p_organization_id"]
                and row["source_id"] == params["p_source_id"]
                and row["relationship_type"] == params["p_relationship_type"]
                and row["multiplicity"] == params["p_multiplicity"]
                and (single or row["target_id"] == params["p_target_id"])
            ):
                row["target_id"] = params["p_target_id"]
                row["attributes"] = {**row["attributes"], **(params["p_attributes"] or {})}
                row["updated_at"] = _ts()
                return row
        now = _ts()
        row = {
            "id": str(uuid4()),
            "organization_id": params["p_organization_id"],
            "source_id": params["p_source_id"],
            "target_id": params["p_target_id"],
            "relationship_type": params["p_relationship_type"],
            "multiplicity": params["p_multiplicity"],
            "attributes": copy.deepcopy(params["p_attributes"] or {}),
            "created_at": now,
            "updated_at": now,
            "deleted_at": None,
        }
        table.append(row)
        return row


class RecordingAuditSink:
    def __init__(self):
        self.records = []

    def emit(self, record: dict) -> None:
        self.records.append(record)


def make_fake_db() -> FakeSupabase:
    return FakeSupabase(
        {
            "organizations": [
                {"id": ORG_ID, "name": "Store One", "slug": "store-one", "business_data": {}, "deleted_at": None},
                {"id": OTHER_ORG_ID, "name": "Store Two", "slug": "store-two", "business_data": {}, "deleted_at": None},
            ],
            "tenant_business_entities": [],
            "tenant_business_relationships": [],
            "tenant_business_transactions": [],
            "webhook_logs": [],
        }
    )


@pytest.fixture(autouse=True)
def _clean_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def fake_db() -> FakeSupabase:
    return make_fake_db()


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()
