from __future__ import annotations

from typing import Final, Literal


EntityType = Literal["PRODUCT", "LOCATION", "SUPPLIER", "CUSTOMER"]
TransactionType = Literal["INVENTORY_ADJUSTMENT", "PURCHASE", "SALE", "TRANSFER", "RETURN"]
RelationshipType = Literal["STOCKED_AT", "PRIMARY_SUPPLIER", "SHIPS_TO", "CUSTOMER_OF"]
Multiplicity = Literal["single", "multi"]
FlowName = Literal["inventory", "purchase", "sales", "transfer", "returns"]

ENTITY_TYPES: Final[frozenset[str]] = frozenset({"PRODUCT", "LOCATION", "SUPPLIER", "CUSTOMER"})

TRANSACTION_TYPES: Final[frozenset[str]] = frozenset(
    {"INVENTORY_ADJUSTMENT", "PURCHASE", "SALE", "TRANSFER", "RETURN"}
)

# single: a source holds at most one live edge of the type (upsert on source+type).
# multi: a source may point at many targets; one edge per (source, type, target).
RELATIONSHIP_MULTIPLICITY: Final[dict[str, Multiplicity]] = {
    "STOCKED_AT": "multi",
    "PRIMARY_SUPPLIER": "single",
    "SHIPS_TO": "multi",
    "CUSTOMER_OF": "multi",
}

INVENTORY_ACTIONS: Final[frozenset[str]] = frozenset(
    {
        "inventory_adjustment",
        "inventory_count",
        "inventory_damage",
        "inventory_expiry",
        "inventory_adjustment_failed",
        "inventory_reversal",
    }
)
PURCHASE_ACTIONS: Final[frozenset[str]] = frozenset(
    {"create_order", "confirm_order", "receive_order", "close_order", "cancel_order", "return_order"}
)
SALES_ACTIONS: Final[frozenset[str]] = frozenset({"register_sale", "cancel_sale", "return_sale"})
TRANSFER_ACTIONS: Final[frozenset[str]] = frozenset(
    {
        "create_transfer_request",
        "start_picking",
        "complete_picking",
        "ship_transfer",
        "receive_transfer",
        "complete_transfer",
        "cancel_transfer",
    }
)
RETURN_ACTIONS: Final[frozenset[str]] = frozenset(
    {"request_return", "complete_return", "reject_return", "transfer_between_stores"}
)

FLOW_ACTIONS: Final[dict[str, frozenset[str]]] = {
    "inventory": INVENTORY_ACTIONS,
    "purchase": PURCHASE_ACTIONS,
    "sales": SALES_ACTIONS,
    "transfer": TRANSFER_ACTIONS,
    "returns": RETURN_ACTIONS,
}

ACTION_TO_TRANSACTION_TYPE: Final[dict[str, str]] = {
    **{action: "INVENTORY_ADJUSTMENT" for action in INVENTORY_ACTIONS},
    **{action: "PURCHASE" for action in PURCHASE_ACTIONS},
    **{action: "SALE" for action in SALES_ACTIONS},
    **{action: "TRANSFER" for action in TRANSFER_ACTIONS},
    **{action: "RETURN" for action in RETURN_ACTIONS},
}

ACTION_TO_TARGET_STATE: Final[dict[str, str]] = {
    "inventory_adjustment": "processed",
    "inventory_count": "processed",
    "inventory_damage": "processed",
    "inventory_expiry": "processed",
    "inventory_adjustment_failed": "failed",
    "inventory_reversal": "reversed",
    "create_order": "draft",
    "confirm_order": "confirmed",
    "receive_order": "received",
    "close_order": "closed",
    "cancel_order": "cancelled",
    "return_order": "returned",
    "register_sale": "completed",
    "cancel_sale": "cancelled",
    "return_sale": "returned",
    "create_transfer_request": "requested",
    "start_picking": "picking",
    "complete_picking": "picked",
    "ship_transfer": "shipped",
    "receive_transfer": "received",
    "complete_transfer": "completed",
    "cancel_transfer": "cancelled",
    "request_return": "requested",
    "complete_return": "completed",
    "reject_return": "rejected",
    "transfer_between_stores": "transferred",
}

# Actions allowed to leave a terminal state through a declared compensation edge.
COMPENSATING_ACTIONS: Final[frozenset[str]] = frozenset(
    {"inventory_reversal", "return_order", "cancel_sale", "return_sale"}
)

ACTION_TO_FLOW: Final[dict[str, str]] = {
    action: flow for flow, actions in FLOW_ACTIONS.items() for action in actions
}


def is_known_action(action: str | None) -> bool:
    return bool(action) and action in ACTION_TO_TRANSACTION_TYPE


def flow_for_action(action: str) -> str:
    return ACTION_TO_FLOW[action]
