from __future__ import annotations

from typing import Any, Callable, Protocol

from src.models.eca import BusinessEntity, BusinessRelationship, BusinessTransaction, TenantContext


class TenantResolver(Protocol):
    def resolve(self, organization_id: str) -> TenantContext: ...


class EntityStore(Protocol):
    def upsert_entity(
        self,
        entity_type: str,
        external_id: str,
        attributes: dict[str, Any],
        organization_id: str,
    ) -> BusinessEntity: ...

    def find_entity_by_external_id(
        self,
        entity_type: str,
        external_id: str,
        organization_id: str,
    ) -> BusinessEntity | None: ...


class RelationshipStore(Protocol):
    def create_relationship(
        self,
        relationship_type: str,
        source_id: str,
        target_id: str,
        attributes: dict[str, Any],
        organization_id: str,
    ) -> BusinessRelationship: ...

    def find_relationships(
        self,
        organization_id: str,
        *,
        source_id: str | None = None,
        target_id: str | None = None,
        relationship_type: str | None = None,
    ) -> list[BusinessRelationship]: ...


class TransactionStore(Protocol):
    def create_transaction(
        self,
        transaction_type: str,
        external_id: str | None,
        initial_status: str,
        attributes: dict[str, Any],
        organization_id: str,
    ) -> BusinessTransaction: ...

    def find_transaction_by_external_id(
        self,
        transaction_type: str,
        external_id: str,
        organization_id: str,
    ) -> BusinessTransaction | None: ...

    def transition_transaction(
        self,
        transaction_id: str,
        new_status: str,
        additional_attributes: dict[str, Any],
        organization_id: str,
        *,
        compensating: bool = False,
        context: dict[str, Any] | None = None,
    ) -> BusinessTransaction: ...


class AuditSink(Protocol):
    def emit(self, record: dict[str, Any]) -> None: ...


class TaskScheduler(Protocol):
    """Anything with FastAPI ``BackgroundTasks.add_task`` semantics."""

    def add_task(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None: ...
