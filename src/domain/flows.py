"""Per-flow derivation of entities, relationships and transaction lines.

Planning is pure: it turns validated attributes into references keyed by
``(entity_type, external_id)`` and never touches storage. The action processor
resolves the references to persisted ids.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Final

from pydantic import BaseModel

from src.domain.eca_types import FLOW_ACTIONS, EntityType, FlowName, RelationshipType
from src.models.flows import (
    InventoryAttributes,
    InventoryItem,
    PurchaseAttributes,
    PurchaseItem,
    ReturnAttributes,
    ReturnItem,
    SaleAttributes,
    SaleItem,
    TransferAttributes,
    TransferItem,
)


EntityKey = tuple[str, str]


@dataclass(frozen=True)
class EntityRef:
    entity_type: EntityType
    external_id: str
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> EntityKey:
        return (self.entity_type, self.external_id)


@dataclass(frozen=True)
class RelationshipRef:
    relationship_type: RelationshipType
    source: EntityKey
    target: EntityKey
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Plan:
    entities: tuple[EntityRef, ...] = ()
    relationships: tuple[RelationshipRef, ...] = ()
    line: dict[str, Any] | None = None


@dataclass(frozen=True)
class FlowDefinition:
    name: FlowName
    actions: frozenset[str]
    attributes_model: type[BaseModel]
    item_model: type[BaseModel]
    plan_header: Callable[[Any], Plan]
    plan_item: Callable[[Any, Any], Plan]


def _named(name: str | None) -> dict[str, Any]:
    return {"name": name} if name else {}


def _product(item: Any) -> EntityRef:
    attributes = _named(getattr(item, "product_name", None))
    unit_cost = getattr(item, "unit_cost", None)
    if unit_cost is not None:
        attributes["last_unit_cost"] = unit_cost
    return EntityRef("PRODUCT", item.product_id, attributes)


def _line(item: BaseModel) -> dict[str, Any]:
    return item.model_dump(mode="json", exclude_none=True)


def _location(external_id: str) -> EntityRef:
    return EntityRef("LOCATION", external_id)


def _stocked_at(item: Any, location_id: str, **attributes: Any) -> RelationshipRef:
    return RelationshipRef(
        "STOCKED_AT",
        ("PRODUCT", item.product_id),
        ("LOCATION", location_id),
        {key: value for key, value in attributes.items() if value is not None},
    )


# inventory


def _inventory_header(attrs: InventoryAttributes) -> Plan:
    return Plan(entities=(_location(attrs.location_id),))


def _inventory_item(attrs: InventoryAttributes, item: InventoryItem) -> Plan:
    return Plan(
        entities=(_product(item),),
        relationships=(
            _stocked_at(item, attrs.location_id, last_quantity_change=item.quantity, last_reason=item.reason),
        ),
        line=_line(item),
    )


# purchase


def _purchase_header(attrs: PurchaseAttributes) -> Plan:
    entities = []
    if attrs.supplier_code:
        entities.append(EntityRef("SUPPLIER", attrs.supplier_code, _named(attrs.supplier_name)))
    if attrs.location_id:
        entities.append(_location(attrs.location_id))
    return Plan(entities=tuple(entities))


def _purchase_item(attrs: PurchaseAttributes, item: PurchaseItem) -> Plan:
    relationships = []
    if attrs.supplier_code:
        relationships.append(
            RelationshipRef(
                "PRIMARY_SUPPLIER",
                ("PRODUCT", item.product_id),
                ("SUPPLIER", attrs.supplier_code),
                {"last_unit_cost": item.unit_cost} if item.unit_cost is not None else {},
            )
        )
    if attrs.location_id:
        relationships.append(_stocked_at(item, attrs.location_id))
    return Plan(entities=(_product(item),), relationships=tuple(relationships), line=_line(item))


# sales


def _sales_header(attrs: SaleAttributes) -> Plan:
    entities = [_location(attrs.location_id)]
    relationships = []
    if attrs.customer_id:
        entities.append(EntityRef("CUSTOMER", attrs.customer_id, _named(attrs.customer_name)))
        relationships.append(
            RelationshipRef("CUSTOMER_OF", ("CUSTOMER", attrs.customer_id), ("LOCATION", attrs.location_id))
        )
    return Plan(entities=tuple(entities), relationships=tuple(relationships))


def _sales_item(attrs: SaleAttributes, item: SaleItem) -> Plan:
    return Plan(
        entities=(_product(item),),
        relationships=(_stocked_at(item, attrs.location_id, last_unit_price=item.unit_price),),
        line=_line(item),
    )


# transfer


def _transfer_header(attrs: TransferAttributes) -> Plan:
    return Plan(
        entities=(_location(attrs.origin_location_id), _location(attrs.destination_location_id)),
        relationships=(
            RelationshipRef(
                "SHIPS_TO",
                ("LOCATION", attrs.origin_location_id),
                ("LOCATION", attrs.destination_location_id),
            ),
        ),
    )


def _transfer_item(attrs: TransferAttributes, item: TransferItem) -> Plan:
    return Plan(
        entities=(_product(item),),
        relationships=(_stocked_at(item, attrs.destination_location_id),),
        line=_line(item),
    )


# returns


def _returns_header(attrs: ReturnAttributes) -> Plan:
    entities = [_location(attrs.location_id)]
    relationships = []
    if attrs.customer_id:
        entities.append(EntityRef("CUSTOMER", attrs.customer_id))
        relationships.append(
            RelationshipRef("CUSTOMER_OF", ("CUSTOMER", attrs.customer_id), ("LOCATION", attrs.location_id))
        )
    if attrs.destination_location_id and attrs.destination_location_id != attrs.location_id:
        entities.append(_location(attrs.destination_location_id))
        relationships.append(
            RelationshipRef(
                "SHIPS_TO",
                ("LOCATION", attrs.location_id),
                ("LOCATION", attrs.destination_location_id),
            )
        )
    return Plan(entities=tuple(entities), relationships=tuple(relationships))


def _returns_item(attrs: ReturnAttributes, item: ReturnItem) -> Plan:
    return Plan(
        entities=(_product(item),),
        relationships=(_stocked_at(item, attrs.location_id, last_return_reason=item.reason or attrs.reason),),
        line=_line(item),
    )


FLOWS: Final[dict[str, FlowDefinition]] = {
    "inventory": FlowDefinition(
        name="inventory",
        actions=FLOW_ACTIONS["inventory"],
        attributes_model=InventoryAttributes,
        item_model=InventoryItem,
        plan_header=_inventory_header,
        plan_item=_inventory_item,
    ),
    "purchase": FlowDefinition(
        name="purchase",
        actions=FLOW_ACTIONS["purchase"],
        attributes_model=PurchaseAttributes,
        item_model=PurchaseItem,
        plan_header=_purchase_header,
        plan_item=_purchase_item,
    ),
    "sales": FlowDefinition(
        name="sales",
        actions=FLOW_ACTIONS["sales"],
        attributes_model=SaleAttributes,
        item_model=SaleItem,
        plan_header=_sales_header,
        plan_item=_sales_item,
    ),
    "transfer": FlowDefinition(
        name="transfer",
        actions=FLOW_ACTIONS["transfer"],
        attributes_model=TransferAttributes,
        item_model=TransferItem,
        plan_header=_transfer_header,
        plan_item=_transfer_item,
    ),
    "returns": FlowDefinition(
        name="returns",
        actions=FLOW_ACTIONS["returns"],
        attributes_model=ReturnAttributes,
        item_model=ReturnItem,
        plan_header=_returns_header,
        plan_item=_returns_item,
    ),
}
