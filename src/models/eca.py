from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from src.domain.eca_types import EntityType, RelationshipType, TransactionType


class ECAWebhookEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    action: str = Field(min_length=1)
    organization_id: UUID
    attributes: dict[str, Any]
    metadata: dict[str, Any] = Field(default_factory=dict)


class TenantContext(BaseModel):
    organization_id: str
    slug: str | None = None
    name: str | None = None
    business_data: dict[str, Any] = Field(default_factory=dict)


class BusinessEntity(BaseModel):
    id: str
    organization_id: str
    entity_type: EntityType
    external_id: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None


class BusinessRelationship(BaseModel):
    id: str
    organization_id: str
    source_id: str
    target_id: str
    relationship_type: RelationshipType
    attributes: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None


class BusinessTransaction(BaseModel):
    id: str
    organization_id: str
    transaction_type: TransactionType
    external_id: str | None = None
    status: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None


class StateTransition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_state: str | None = Field(default=None, alias="from")
    to_state: str = Field(alias="to")


class ECASummary(BaseModel):
    message: str
    records_processed: int
    records_successful: int
    records_failed: int


class ECAResponseAttributes(BaseModel):
    success: bool
    summary: ECASummary
    transaction_type: str | None = None
    failed_records: list[dict[str, Any]] = Field(default_factory=list)


class ECAResponseMetadata(BaseModel):
    processed_at: datetime
    processing_time_ms: int
    organization_id: str | None = None
    action: str | None = None
    event_uuid: str


class ECAErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class ECAWebhookResponse(BaseModel):
    success: bool
    action: str | None = None
    transaction_id: str | None = None
    entity_ids: list[str] = Field(default_factory=list)
    relationship_ids: list[str] = Field(default_factory=list)
    state_transition: StateTransition | None = None
    attributes: ECAResponseAttributes
    metadata: ECAResponseMetadata
    error: ECAErrorBody | None = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class EntityGraphResponse(BaseModel):
    entity: BusinessEntity
    outbound: list[BusinessRelationship]
    inbound: list[BusinessRelationship]
