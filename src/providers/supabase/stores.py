from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from src.domain.eca_errors import InvalidStateTransition, StorageError, TransactionNotFound
from src.domain.eca_types import RELATIONSHIP_MULTIPLICITY
from src.domain.state_machine import STATE_MACHINE, StateMachine
from src.models.eca import BusinessEntity, BusinessRelationship, BusinessTransaction
from src.observability import log_event


ENTITIES_TABLE = "tenant_business_entities"
RELATIONSHIPS_TABLE = "tenant_business_relationships"
TRANSACTIONS_TABLE = "tenant_business_transactions"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _rows(result: Any) -> list[dict[str, Any]]:
    data = getattr(result, "data", None)
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return data
    return []


def _is_unique_violation(exc: Exception) -> bool:
    text = str(exc).lower()
    return "duplicate" in text or "unique" in text or "23505" in text


class SupabaseEntityStore:
    def __init__(self, client: Any) -> None:
        self._client = client

    def upsert_entity(
        self,
        entity_type: str,
        external_id: str,
        attributes: dict[str, Any],
        organization_id: str,
    ) -> BusinessEntity:
        # eca_upsert_entity merges attributes server-side (attributes || new).
        try:
            result = self._client.rpc(
                "eca_upsert_entity",
                {
                    "p_organization_id": organization_id,
                    "p_entity_type": entity_type,
                    "p_external_id": external_id,
                    "p_attributes": attributes,
                },
            ).execute()
        except Exception as exc:
            raise StorageError("upsert_entity", exc) from exc
        rows = _rows(result)
        if not rows:
            raise StorageError("upsert_entity", "no row returned")
        return BusinessEntity.model_validate(rows[0])

    def find_entity_by_external_id(
        self,
        entity_type: str,
        external_id: str,
        organization_id: str,
    ) -> BusinessEntity | None:
        try:
            result = (
                self._client.table(ENTITIES_TABLE)
                .select("*")
                .eq("organization_id", organization_id)
                .eq("entity_type", entity_type)
                .eq("external_id", external_id)
                .is_("deleted_at", "null")
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise StorageError("find_entity_by_external_id", exc) from exc
        rows = _rows(result)
        return BusinessEntity.model_validate(rows[0]) if rows else None


class SupabaseRelationshipStore:
    def __init__(self, client: Any) -> None:
        self._client = client

    def create_relationship(
        self,
        relationship_type: str,
        source_id: str,
        target_id: str,
        attributes: dict[str, Any],
        organization_id: str,
    ) -> BusinessRelationship:
        multiplicity = RELATIONSHIP_MULTIPLICITY.get(relationship_type)
        if multiplicity is None:
            raise ValueError(f"Unknown relationship type: {relationship_type}")
        try:
            result = self._client.rpc(
                "eca_upsert_relationship",
                {
                    "p_organization_id": organization_id,
                    "p_relationship_type": relationship_type,
                    "p_source_id": source_id,
                    "p_target_id": target_id,
                    "p_attributes": attributes,
                    "p_multiplicity": multiplicity,
                },
            ).execute()
        except Exception as exc:
            raise StorageError("create_relationship", exc) from exc
        rows = _rows(result)
        if not rows:
            raise StorageError("create_relationship", "no row returned")
        return BusinessRelationship.model_validate(rows[0])

    def find_relationships(
        self,
        organization_id: str,
        *,
        source_id: str | None = None,
        target_id: str | None = None,
        relationship_type: str | None = None,
    ) -> list[BusinessRelationship]:
        query = (
            self._client.table(RELATIONSHIPS_TABLE)
            .select("*")
            .eq("organization_id", organization_id)
            .is_("deleted_at", "null")
        )
        if source_id:
            query = query.eq("source_id", source_id)
        if target_id:
            query = query.eq("target_id", target_id)
        if relationship_type:
            query = query.eq("relationship_type", relationship_type)
        try:
            result = query.execute()
        except Exception as exc:
            raise StorageError("find_relationships", exc) from exc
        return [BusinessRelationship.model_validate(row) for row in _rows(result)]


class SupabaseTransactionStore:
    def __init__(self, client: Any, state_machine: StateMachine = STATE_MACHINE) -> None:
        self._client = client
        self._state_machine = state_machine

    def _get(self, transaction_id: str, organization_id: str) -> BusinessTransaction | None:
        try:
            result = (
                self._client.table(TRANSACTIONS_TABLE)
                .select("*")
                .eq("id", transaction_id)
                .eq("organization_id", organization_id)
                .is_("deleted_at", "null")
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise StorageError("get_transaction", exc) from exc
        rows = _rows(result)
        return BusinessTransaction.model_validate(rows[0]) if rows else None

    def find_transaction_by_external_id(
        self,
        transaction_type: str,
        external_id: str,
        organization_id: str,
    ) -> BusinessTransaction | None:
        try:
            result = (
                self._client.table(TRANSACTIONS_TABLE)
                .select("*")
                .eq("organization_id", organization_id)
                .eq("transaction_type", transaction_type)
                .eq("external_id", external_id)
                .is_("deleted_at", "null")
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise StorageError("find_transaction_by_external_id", exc) from exc
        rows = _rows(result)
        return BusinessTransaction.model_validate(rows[0]) if rows else None

    def create_transaction(
        self,
        transaction_type: str,
        external_id: str | None,
        initial_status: str,
        attributes: dict[str, Any],
        organization_id: str,
    ) -> BusinessTransaction:
        """Insert a transaction, or return the live row that won a concurrent insert."""
        if not self._state_machine.is_valid_state(transaction_type, initial_status):
            raise InvalidStateTransition(None, initial_status, transaction_type)
        now = _now_iso()
        row = {
            "organization_id": organization_id,
            "transaction_type": transaction_type,
            "external_id": external_id,
            "status": initial_status,
            "attributes": attributes,
            "created_at": now,
            "updated_at": now,
        }
        try:
            result = self._client.table(TRANSACTIONS_TABLE).insert(row).execute()
        except Exception as exc:
            if external_id and _is_unique_violation(exc):
                existing = self.find_transaction_by_external_id(transaction_type, external_id, organization_id)
                if existing is not None:
                    log_event(
                        "eca_transaction_create_conflict",
                        transaction_type=transaction_type,
                        external_id=external_id,
                        organization_id=organization_id,
                    )
                    return existing
            raise StorageError("create_transaction", exc) from exc
        rows = _rows(result)
        if not rows:
            raise StorageError("create_transaction", "no row returned")
        return BusinessTransaction.model_validate(rows[0])

    def transition_transaction(
        self,
        transaction_id: str,
        new_status: str,
        additional_attributes: dict[str, Any],
        organization_id: str,
        *,
        compensating: bool = False,
        context: dict[str, Any] | None = None,
    ) -> BusinessTransaction:
        current = self._get(transaction_id, organization_id)
        if current is None:
            raise TransactionNotFound(transaction_id)
        if current.status == new_status:
            return current
        if not self._state_machine.can_transition(
            current.transaction_type, current.status, new_status, compensating=compensating
        ):
            raise InvalidStateTransition(current.status, new_status, current.transaction_type)

        now = _now_iso()
        history = list(current.attributes.get("state_history") or [])
        history.append({"from": current.status, "to": new_status, "transitioned_at": now, **(context or {})})
        attributes = {**current.attributes, **additional_attributes, "state_history": history}
        try:
            result = (
                self._client.table(TRANSACTIONS_TABLE)
                .update({"status": new_status, "attributes": attributes, "updated_at": now})
                .eq("id", transaction_id)
                .eq("organization_id", organization_id)
                .eq("status", current.status)
                .execute()
            )
        except Exception as exc:
            raise StorageError("transition_transaction", exc) from exc
        rows = _rows(result)
        if rows:
            return BusinessTransaction.model_validate(rows[0])

        # Lost the compare-and-set on status.
        latest = self._get(transaction_id, organization_id)
        if latest is None:
            raise TransactionNotFound(transaction_id)
        if latest.status == new_status:
            return latest
        raise InvalidStateTransition(latest.status, new_status, latest.transaction_type)
