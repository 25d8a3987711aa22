import itertools
from types import SimpleNamespace

import pytest

from conftest import ORG_ID, OTHER_ORG_ID
from src.domain.eca_errors import DeadlineExceeded
from src.domain.processor import ActionProcessor, Deadline, PartialFailurePolicy
from src.observability import metrics_snapshot
from src.providers.supabase.stores import (
    SupabaseEntityStore,
    SupabaseRelationshipStore,
    SupabaseTransactionStore,
)
from src.providers.supabase.tenants import SupabaseTenantResolver


def _processor(fake_db, audit_sink, **kwargs) -> ActionProcessor:
    collaborators = {
        "tenants": SupabaseTenantResolver(fake_db),
        "entities": SupabaseEntityStore(fake_db),
        "relationships": SupabaseRelationshipStore(fake_db),
        "transactions": SupabaseTransactionStore(fake_db),
        "audit": audit_sink,
    }
    collaborators.update(kwargs)
    return ActionProcessor(**collaborators)


class _DeferredTasks:
    def __init__(self):
        self.tasks = []

    def add_task(self, func, *args, **kwargs):
        self.tasks.append((func, args, kwargs))

    def run(self):
        for func, args, kwargs in self.tasks:
            func(*args, **kwargs)


def _inventory_payload(org_id: str = ORG_ID, items=None) -> dict:
    return {
        "action": "inventory_adjustment",
        "organization_id": org_id,
        "attributes": {
            "location_id": "L1",
            "items": items if items is not None else [{"product_id": "P1", "quantity": -5, "reason": "damage"}],
            "status": "pending",
        },
    }


def _purchase_payload(action: str, **attributes) -> dict:
    return {
        "action": action,
        "organization_id": ORG_ID,
        "attributes": {"external_id": "PO-1", "supplier_code": "S1", **attributes},
    }


def _entity_ids_by_key(fake_db) -> dict:
    return {(row["entity_type"], row["external_id"]): row["id"] for row in fake_db.rows("tenant_business_entities")}


def test_inventory_adjustment_creates_entities_and_processed_transaction(fake_db, audit_sink):
    response = _processor(fake_db, audit_sink).process(_inventory_payload())
    wire = response.to_wire()

    assert wire["success"] is True
    assert wire["error"] is None
    assert wire["state_transition"] == {"from": None, "to": "processed"}
    ids = _entity_ids_by_key(fake_db)
    assert set(wire["entity_ids"]) == {ids[("PRODUCT", "P1")], ids[("LOCATION", "L1")]}
    assert len(wire["relationship_ids"]) == 1
    assert wire["attributes"]["summary"]["records_processed"] == 1
    assert wire["attributes"]["summary"]["records_successful"] == 1

    transactions = fake_db.rows("tenant_business_transactions")
    assert len(transactions) == 1
    assert transactions[0]["id"] == wire["transaction_id"]
    assert transactions[0]["status"] == "processed"
    history = transactions[0]["attributes"]["state_history"]
    assert [(h["from"], h["to"]) for h in history] == [(None, "pending"), ("pending", "processed")]
    assert transactions[0]["attributes"]["lines"] == [{"product_id": "P1", "quantity": -5.0, "reason": "damage"}]


def test_replayed_payload_is_idempotent(fake_db, audit_sink):
    processor = _processor(fake_db, audit_sink)

    first = processor.process(_inventory_payload())
    second = processor.process(_inventory_payload())

    assert second.success is True
    assert second.entity_ids == first.entity_ids
    assert second.relationship_ids == first.relationship_ids
    assert second.transaction_id == first.transaction_id
    assert second.state_transition is None
    assert len(fake_db.rows("tenant_business_entities")) == 2
    assert len(fake_db.rows("tenant_business_relationships")) == 1
    assert len(fake_db.rows("tenant_business_transactions")) == 1
    assert metrics_snapshot()["eca.transactions.replayed|transaction_type=INVENTORY_ADJUSTMENT"] == 1


def test_one_malformed_item_fails_alone(fake_db, audit_sink):
    items = [
        {"product_id": "P1", "quantity": 1},
        {"quantity": "lots"},
        {"product_id": "P3", "quantity": 2},
    ]

    response = _processor(fake_db, audit_sink).process(_inventory_payload(items=items))
    summary = response.attributes.summary

    assert response.success is True
    assert (summary.records_processed, summary.records_successful, summary.records_failed) == (3, 2, 1)
    assert response.attributes.failed_records[0]["index"] == 1
    ids = _entity_ids_by_key(fake_db)
    assert ("PRODUCT", "P1") in ids and ("PRODUCT", "P3") in ids
    lines = fake_db.rows("tenant_business_transactions")[0]["attributes"]["lines"]
    assert [line["product_id"] for line in lines] == ["P1", "P3"]


def test_every_item_failing_aborts_before_writes(fake_db, audit_sink):
    response = _processor(fake_db, audit_sink).process(
        _inventory_payload(items=[{"quantity": 1}, "not-an-item"])
    )

    assert response.success is False
    assert response.error.code == "RECORD_PROCESSING_FAILED"
    assert response.error.details["reason"] == "all_records_failed"
    assert fake_db.rows("tenant_business_entities") == []
    assert fake_db.rows("tenant_business_transactions") == []


def test_strict_policy_rejects_batch_with_any_bad_item(fake_db, audit_sink):
    processor = _processor(
        fake_db,
        audit_sink,
        policy=PartialFailurePolicy.from_settings("continue", "inventory_adjustment"),
    )

    response = processor.process(
        _inventory_payload(items=[{"product_id": "P1", "quantity": 1}, {"quantity": 2}])
    )

    assert response.success is False
    assert response.error.code == "RECORD_PROCESSING_FAILED"
    assert response.error.details["reason"] == "strict"
    assert fake_db.rows("tenant_business_entities") == []


def test_tenant_isolation(fake_db, audit_sink):
    processor = _processor(fake_db, audit_sink)

    mine = processor.process(_inventory_payload(ORG_ID))
    theirs = processor.process(_inventory_payload(OTHER_ORG_ID))

    assert set(mine.entity_ids).isdisjoint(theirs.entity_ids)
    assert mine.transaction_id != theirs.transaction_id
    for row in fake_db.rows("tenant_business_entities"):
        owner = ORG_ID if row["id"] in mine.entity_ids else OTHER_ORG_ID
        assert row["organization_id"] == owner


def test_unknown_tenant_fails_closed(fake_db, audit_sink):
    response = _processor(fake_db, audit_sink).process(
        _inventory_payload("33333333-3333-4333-8333-333333333333")
    )

    assert response.success is False
    assert response.error.code == "TENANT_NOT_FOUND"
    assert fake_db.rows("tenant_business_entities") == []


def test_purchase_lifecycle_transitions_existing_order(fake_db, audit_sink):
    processor = _processor(fake_db, audit_sink)

    created = processor.process(_purchase_payload("create_order", items=[{"product_id": "P1", "quantity": 4}]))
    confirmed = processor.process(_purchase_payload("confirm_order"))

    assert created.to_wire()["state_transition"] == {"from": None, "to": "draft"}
    assert confirmed.to_wire()["state_transition"] == {"from": "draft", "to": "confirmed"}
    assert confirmed.transaction_id == created.transaction_id
    history = fake_db.rows("tenant_business_transactions")[0]["attributes"]["state_history"]
    assert [h["to"] for h in history] == ["draft", "confirmed"]
    supplier_edges = [
        r for r in fake_db.rows("tenant_business_relationships") if r["relationship_type"] == "PRIMARY_SUPPLIER"
    ]
    assert len(supplier_edges) == 1


def test_transition_from_terminal_state_is_rejected(fake_db, audit_sink):
    processor = _processor(fake_db, audit_sink)
    for action in ("create_order", "confirm_order", "receive_order", "close_order"):
        assert processor.process(_purchase_payload(action)).success is True

    response = processor.process(_purchase_payload("cancel_order"))
    wire = response.to_wire()

    assert wire["success"] is False
    assert wire["error"]["code"] == "INVALID_STATE_TRANSITION"
    assert wire["error"]["details"]["from"] == "closed"
    assert wire["state_transition"] is None
    assert fake_db.rows("tenant_business_transactions")[0]["status"] == "closed"


def test_compensating_action_leaves_terminal_state(fake_db, audit_sink):
    processor = _processor(fake_db, audit_sink)
    for action in ("create_order", "confirm_order", "receive_order", "close_order"):
        processor.process(_purchase_payload(action))

    response = processor.process(_purchase_payload("return_order"))

    assert response.success is True
    assert response.to_wire()["state_transition"] == {"from": "closed", "to": "returned"}


def test_action_on_missing_transaction_must_be_reachable_from_initial(fake_db, audit_sink):
    response = _processor(fake_db, audit_sink).process(_purchase_payload("close_order"))

    assert response.error.code == "INVALID_STATE_TRANSITION"
    assert fake_db.rows("tenant_business_transactions") == []
    assert fake_db.rows("tenant_business_entities") == []
    assert fake_db.rows("tenant_business_relationships") == []


def test_rejected_transition_leaves_entities_untouched(fake_db, audit_sink):
    processor = _processor(fake_db, audit_sink)
    for action in ("create_order", "confirm_order", "receive_order", "close_order"):
        processor.process(_purchase_payload(action, supplier_name="Acme", items=[{"product_id": "P1", "quantity": 2}]))
    entities_before = [dict(row) for row in fake_db.rows("tenant_business_entities")]
    relationships_before = [dict(row) for row in fake_db.rows("tenant_business_relationships")]
    fake_db.calls.clear()

    response = processor.process(
        _purchase_payload("create_order", supplier_name="Globex", items=[{"product_id": "P9", "quantity": 1}])
    )

    assert response.error.code == "INVALID_STATE_TRANSITION"
    assert response.entity_ids == []
    assert fake_db.rows("tenant_business_entities") == entities_before
    assert fake_db.rows("tenant_business_relationships") == relationships_before
    supplier = next(r for r in entities_before if r["entity_type"] == "SUPPLIER")
    assert supplier["attributes"] == {"name": "Acme"}
    assert not [call for call in fake_db.calls if call[0] == "rpc"]


def test_concurrent_duplicate_transition_is_reported_as_replay(fake_db, audit_sink):
    class RacingTransactionStore(SupabaseTransactionStore):
        def find_transaction_by_external_id(self, transaction_type, external_id, organization_id):
            row = super().find_transaction_by_external_id(transaction_type, external_id, organization_id)
            # The twin delivery commits the same move right after our read.
            fake_db.rows("tenant_business_transactions")[0]["status"] = "confirmed"
            return row

    _processor(fake_db, audit_sink).process(_purchase_payload("create_order"))
    racing = _processor(fake_db, audit_sink, transactions=RacingTransactionStore(fake_db))

    response = racing.process(_purchase_payload("confirm_order"))

    assert response.success is True
    assert response.state_transition is None
    assert fake_db.rows("tenant_business_transactions")[0]["status"] == "confirmed"
    assert metrics_snapshot()["eca.transactions.replayed|transaction_type=PURCHASE"] == 1
    assert "eca.transactions.transitioned|to=confirmed,transaction_type=PURCHASE" not in metrics_snapshot()


def test_validation_error_still_returns_full_response(fake_db, audit_sink):
    response = _processor(fake_db, audit_sink).process({"action": "inventory_adjustment"})
    wire = response.to_wire()

    assert wire["success"] is False
    assert wire["error"]["code"] == "VALIDATION_ERROR"
    assert {e["field"] for e in wire["error"]["details"]["errors"]} >= {"organization_id", "attributes"}
    assert wire["metadata"]["event_uuid"]
    assert wire["attributes"]["summary"]["records_failed"] == 1


def test_storage_failure_aborts_with_ids_touched_so_far(fake_db, audit_sink):
    fake_db.fail_on[("rpc", "eca_upsert_relationship")] = Exception("connection reset")

    response = _processor(fake_db, audit_sink).process(_inventory_payload())

    assert response.success is False
    assert response.error.code == "STORAGE_ERROR"
    assert response.error.details["retryable"] is True
    assert len(response.entity_ids) == 2
    assert response.transaction_id is None


def test_unexpected_exception_becomes_internal_error(fake_db, audit_sink):
    class ExplodingResolver:
        def resolve(self, organization_id):
            raise RuntimeError("boom")

    processor = _processor(fake_db, audit_sink, tenants=ExplodingResolver())

    response = processor.process(_inventory_payload())

    assert response.success is False
    assert response.error.code == "INTERNAL_ERROR"
    assert len(audit_sink.records) == 1


def test_deadline_expires_on_check():
    ticks = itertools.count(start=0, step=5)
    deadline = Deadline(1.0, clock=lambda: next(ticks))

    with pytest.raises(DeadlineExceeded) as exc_info:
        deadline.check("upsert_entity")

    assert exc_info.value.details["stage"] == "upsert_entity"
    assert exc_info.value.retryable is True
    Deadline(None).check("upsert_entity")


def test_tiny_timeout_returns_deadline_error(fake_db, audit_sink, monkeypatch):
    from src.domain import processor as processor_module

    ticks = itertools.count(start=0, step=5)
    monkeypatch.setattr(processor_module, "time", SimpleNamespace(monotonic=lambda: next(ticks)))

    response = _processor(fake_db, audit_sink).process(_inventory_payload(), timeout_seconds=1.0)

    assert response.error.code == "DEADLINE_EXCEEDED"
    assert fake_db.rows("tenant_business_entities") == []


def test_exactly_one_audit_record_per_invocation(fake_db, audit_sink):
    processor = _processor(fake_db, audit_sink)

    ok = processor.process(_inventory_payload(), request_id="req-1")
    bad = processor.process({"action": "nope"}, request_id="req-2")

    assert [r["request_id"] for r in audit_sink.records] == ["req-1", "req-2"]
    assert audit_sink.records[0]["event_uuid"] == ok.metadata.event_uuid
    assert audit_sink.records[0]["flow"] == "inventory"
    assert audit_sink.records[1]["success"] is False
    assert audit_sink.records[1]["error_message"] == bad.error.message


def test_audit_sink_failure_never_reaches_caller(fake_db):
    class BrokenSink:
        def emit(self, record):
            raise RuntimeError("audit store down")

    response = _processor(fake_db, BrokenSink()).process(_inventory_payload())

    assert response.success is True
    assert metrics_snapshot()["eca.audit.failed|sink=BrokenSink"] == 1


def test_transfer_flow_links_locations(fake_db, audit_sink):
    payload = {
        "action": "create_transfer_request",
        "organization_id": ORG_ID,
        "attributes": {
            "external_id": "TR-1",
            "origin_location_id": "L1",
            "destination_location_id": "L2",
            "items": [{"product_id": "P1", "quantity": 3}],
        },
    }

    response = _processor(fake_db, audit_sink).process(payload, flow="transfer")

    assert response.success is True
    types = sorted(r["relationship_type"] for r in fake_db.rows("tenant_business_relationships"))
    assert types == ["SHIPS_TO", "STOCKED_AT"]
    assert response.to_wire()["state_transition"] == {"from": None, "to": "requested"}


def test_audit_delivery_can_be_deferred_to_background(fake_db, audit_sink):
    background = _DeferredTasks()

    response = _processor(fake_db, audit_sink).process(_inventory_payload(), request_id="req-7", background=background)

    assert response.success is True
    assert audit_sink.records == []
    assert len(background.tasks) == 1
    background.run()
    assert [r["event_uuid"] for r in audit_sink.records] == [response.metadata.event_uuid]
    assert audit_sink.records[0]["request_id"] == "req-7"


def test_deferred_audit_failure_is_counted(fake_db):
    class BrokenSink:
        def emit(self, record):
            raise RuntimeError("audit store down")

    background = _DeferredTasks()
    response = _processor(fake_db, BrokenSink()).process(_inventory_payload(), background=background)
    background.run()

    assert response.success is True
    assert metrics_snapshot()["eca.audit.failed|sink=BrokenSink"] == 1
